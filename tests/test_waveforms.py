import numpy as np
from scipy.sparse import csc_matrix

from bpsort import waveforms
from bpsort.simulation import make_waveform, simulate_recording


samples = (-12, 24)
T = samples[1] - samples[0] + 1


def test_knot_weights():
    # Knots at the centers of blocks of 100 samples.
    w = waveforms.knot_weights([0, 50, 100, 150, 275, 400], 100, 3)
    assert np.allclose(w.sum(1), 1)
    assert np.allclose(w[0], [1, 0, 0])
    assert np.allclose(w[1], [1, 0, 0])
    assert np.allclose(w[2], [0.5, 0.5, 0])
    assert np.allclose(w[3], [0, 1, 0])
    assert np.allclose(w[4], [0, 0, 1])
    assert np.allclose(w[5], [0, 0, 1])

    assert np.allclose(waveforms.knot_weights([10, 500], 100, 1), 1)


def test_spikes_from_train():
    X = csc_matrix(([1.0, 2.0, 0.5], ([30, 10, 10], [0, 1, 0])), shape=(50, 2))
    times, templates, amplitudes = waveforms.spikes_from_train(X)
    assert np.all(times == [10, 10, 30])
    assert np.all(templates == [0, 1, 0])
    assert np.allclose(amplitudes, [0.5, 2.0, 1.0])


def spike_train(times, templates, amplitudes, n, M):
    return csc_matrix((amplitudes, (times, templates)), shape=(n, M))


def test_estimate_waveforms_no_noise():
    n = 6000
    basis = np.eye(T)
    w1 = make_waveform(samples, 0, 3, amplitude=5)
    w2 = make_waveform(samples, 2, 3, amplitude=8, width=2.5)
    t1 = np.arange(100, 5800, 200)
    t2 = t1 + 100
    a1 = np.linspace(0.8, 1.2, t1.size)
    V = simulate_recording([w1, w2], [t1, t2], n, samples, noise_sd=0,
                           amplitudes=[a1, np.ones(t2.size)])
    X = spike_train(np.concatenate([t1, t2]),
                    np.concatenate([np.zeros(t1.size, int), np.ones(t2.size, int)]),
                    np.concatenate([a1, np.ones(t2.size)]), n, 2)

    # Without drift, one waveform is shared by all knots.
    U = waveforms.estimate_waveforms(V, X, basis, samples, 2000, 3,
                                     drift_sd=0, ridge=1e-6)
    assert U.shape == (T, 3, 3, 2)
    assert np.allclose(U[:, :, 0], U[:, :, 2])

    assert np.allclose(U[:, :, 0, 0], w1, atol=1e-4)
    assert np.allclose(U[:, :, 0, 1], w2, atol=1e-4)

    # Residuals vanish when reconstructing with the true waveforms.
    U_true = np.stack([w1, w2], axis=-1)[:, :, None, :].repeat(3, axis=2)
    R = waveforms.residuals(V, X, U_true, basis, samples, 2000)
    assert np.abs(R).max() < 1e-4


def test_estimate_waveforms_drift():
    n = 9000
    basis = np.eye(T)
    w_start = make_waveform(samples, 0, 2, amplitude=5)
    w_end = make_waveform(samples, 1, 2, amplitude=5)
    times = np.arange(100, 8900, 150)
    V = simulate_recording([w_start], [times], n, samples, noise_sd=0,
                           drift=[w_end])
    X = spike_train(times, np.zeros(times.size, int), np.ones(times.size), n, 1)

    U_drift = waveforms.estimate_waveforms(V, X, basis, samples, 3000, 3,
                                           drift_sd=10, ridge=1e-6)
    U_fixed = waveforms.estimate_waveforms(V, X, basis, samples, 3000, 3,
                                           drift_sd=0, ridge=1e-6)

    # The drifting estimate follows the peak moving from channel 0 to 1.
    peak = np.abs(U_drift[:, :, :, 0]).max(axis=0)
    assert peak[0, 0] > peak[1, 0]
    assert peak[1, 2] > peak[0, 2]
    R_drift = waveforms.residuals(V, X, U_drift, basis, samples, 3000)
    R_fixed = waveforms.residuals(V, X, U_fixed, basis, samples, 3000)
    assert (R_drift**2).sum() < 0.5 * (R_fixed**2).sum()


def test_ridge_shrinks():
    n = 2000
    basis = np.eye(T)
    w = make_waveform(samples, 0, 1, amplitude=5)
    times = np.array([100, 500, 900, 1300])
    V = simulate_recording([w], [times], n, samples, noise_sd=0)
    X = spike_train(times, np.zeros(4, int), np.ones(4), n, 1)
    U = waveforms.estimate_waveforms(V, X, basis, samples, n, 1,
                                     drift_sd=1, ridge=4.0)
    # 4 spikes with unit amplitude and ridge 4 halve the waveform.
    assert np.allclose(U[:, :, 0, 0], w / 2)
