import numpy as np


def make_waveform(samples, peak_channel, n_channels, width=1.5, spread=1.0,
                  amplitude=10.):
    """Biphasic spike waveform, shape (window samples, n_channels).

    The trough sits at sample offset 0 on `peak_channel` and decays with a
    Gaussian profile of `spread` channels.

    """
    t = np.arange(samples[0], samples[1] + 1, dtype=np.float64)
    trough = -np.exp(-t**2 / (2 * width**2))
    rebound = 0.35 * np.exp(-(t - 4 * width)**2 / (2 * (2 * width)**2))
    profile = np.exp(-(np.arange(n_channels) - peak_channel)**2 / (2 * spread**2))
    return amplitude * (trough + rebound)[:, None] * profile[None, :]


def poisson_train(rate, n_samples, fs, refractory=2.0, rng=None):
    """Spike times (samples) with the given rate (Hz) and refractory period (ms)."""
    rng = np.random.default_rng() if rng is None else rng
    gap = int(round(refractory * fs / 1000))
    n = rng.poisson(rate * n_samples / fs)
    isi = gap + rng.exponential(fs / rate, size=n)
    times = np.cumsum(isi).astype(np.int64)
    return times[times < n_samples]


def simulate_recording(waveforms, spike_trains, n_samples, samples, noise_sd=1.,
                       amplitudes=None, drift=None, seed=0):
    """Add spikes with known waveforms to white Gaussian noise.

    Parameters
    ----------
    waveforms : list of np.ndarray
        One waveform per neuron, shape (window samples, n_channels).
    spike_trains : list of np.ndarray
        Spike times (samples) of each neuron.
    n_samples : int
    samples : tuple of int
        First and last sample offset of the waveform window.
    noise_sd : float
    amplitudes : list of np.ndarray; optional.
        Amplitude of each spike, default 1.
    drift : list of np.ndarray; optional.
        Waveform at the end of the recording for each neuron. The waveform
        changes linearly from `waveforms[i]` to `drift[i]`.
    seed : int

    Returns
    -------
    data : np.ndarray
        Shape (n_samples, n_channels), float32.

    """
    rng = np.random.default_rng(seed)
    n_channels = waveforms[0].shape[1]
    data = noise_sd * rng.standard_normal((n_samples, n_channels))
    offsets = np.arange(samples[0], samples[1] + 1)

    for i, (w, st) in enumerate(zip(waveforms, spike_trains)):
        st = np.asarray(st, dtype=np.int64)
        ok = (st + samples[0] >= 0) & (st + samples[1] < n_samples)
        st = st[ok]
        a = np.ones(st.size) if amplitudes is None else np.asarray(amplitudes[i])[ok]
        wave = np.broadcast_to(w, (st.size,) + w.shape)
        if drift is not None:
            frac = (st / n_samples)[:, None, None]
            wave = (1 - frac) * w + frac * drift[i]
        np.add.at(data, st[:, None] + offsets[None, :], a[:, None, None] * wave)

    return data.astype(np.float32)
