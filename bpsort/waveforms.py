import logging
logger = logging.getLogger(__name__)

import numpy as np
from scipy.sparse import csc_matrix


def knot_weights(times, block_samples, n_knots):
    """Linear interpolation weights of drift knots at the given times.

    Knot j sits at the center of processing block j. Times before the first
    or after the last knot use the nearest knot.

    Returns
    -------
    w : np.ndarray
        Shape (n_times, n_knots), each row sums to one.

    """
    times = np.asarray(times, dtype=np.float64)
    w = np.zeros((times.size, n_knots))
    if n_knots == 1:
        w[:] = 1
        return w
    u = np.clip(times / block_samples - 0.5, 0, n_knots - 1)
    j0 = np.minimum(np.floor(u).astype(np.int64), n_knots - 2)
    frac = u - j0
    rows = np.arange(times.size)
    w[rows, j0] = 1 - frac
    w[rows, j0 + 1] = frac
    return w


def interpolate_dictionary(U, w):
    """Dictionary snapshot (components, channels, templates) for knot weights w."""
    return np.einsum('dkjm,j->dkm', U, w)


def spikes_from_train(X):
    """Spike times, templates and amplitudes of a sparse spike train."""
    X = csc_matrix(X, copy=True)
    X.sum_duplicates()
    X.eliminate_zeros()
    X = X.tocoo()
    isort = np.lexsort((X.col, X.row))
    return (X.row[isort].astype(np.int64), X.col[isort].astype(np.int64),
            X.data[isort].astype(np.float64))


def empty_statistics(n_components, n_channels, n_knots, n_templates):
    return {
        'A': np.zeros((n_templates, n_knots, n_knots)),
        'R': np.zeros((n_templates, n_knots, n_components, n_channels)),
        'counts': np.zeros(n_templates, dtype=np.int64),
        }


def accumulate_statistics(stats, V, times, templates, amplitudes, w, basis,
                          samples, chunk=5000):
    """Add spikes to the regression statistics of `estimate_waveforms`.

    Parameters
    ----------
    stats : dict
        As returned by `empty_statistics`, updated in place.
    V : np.ndarray
        Signal, shape (n_samples, n_channels).
    times : np.ndarray
        Spike times as row indices of V. Spikes whose window does not fit in
        V are ignored.
    templates, amplitudes : np.ndarray
        Template index and amplitude of each spike.
    w : np.ndarray
        Knot weights of each spike, shape (n_spikes, n_knots).
    basis : np.ndarray
        Waveform basis, shape (n_window_samples, n_components).
    samples : tuple of int
        First and last sample offset of the waveform window.

    """
    offsets = np.arange(samples[0], samples[1] + 1)
    ok = (times + samples[0] >= 0) & (times + samples[1] < V.shape[0])
    times, templates, amplitudes, w = times[ok], templates[ok], amplitudes[ok], w[ok]
    np.add.at(stats['counts'], templates, 1)

    for i in range(0, times.size, chunk):
        t = times[i : i + chunk]
        m = templates[i : i + chunk]
        a = amplitudes[i : i + chunk]
        wi = w[i : i + chunk]
        # project snippets onto the basis: (n, components, channels)
        y = np.einsum('td,ntk->ndk', basis, V[t[:, None] + offsets[None, :]])
        np.add.at(stats['A'], m, (a**2)[:, None, None] * wi[:, :, None] * wi[:, None, :])
        np.add.at(stats['R'], m, a[:, None, None, None] * wi[:, :, None, None] * y[:, None])


def solve_waveforms(stats, drift_sd, ridge=1.0):
    """Ridge regression of drifting waveforms from accumulated statistics.

    Minimizes, per template, the squared error of amplitude-scaled waveforms
    plus `ridge` times the squared norm at every knot plus the squared change
    between consecutive knots divided by `drift_sd**2`. All terms are in
    units of noise variance.

    Returns
    -------
    U : np.ndarray
        Shape (components, channels, knots, templates).

    """
    A, R = stats['A'], stats['R']
    n_templates, n_knots, D, K = R.shape
    U = np.zeros((D, K, n_knots, n_templates))
    eye = np.eye(n_knots)
    if n_knots > 1 and drift_sd > 0:
        lap = 2 * eye - np.eye(n_knots, k=1) - np.eye(n_knots, k=-1)
        lap[0, 0] = lap[-1, -1] = 1
        penalty = lap / drift_sd**2
    else:
        penalty = np.zeros_like(eye)

    for m in range(n_templates):
        if n_knots > 1 and drift_sd <= 0:
            # no drift: one waveform shared by all knots
            u = R[m].sum(0) / (A[m].sum() + ridge)
            U[:, :, :, m] = u[:, :, None]
            continue
        Um = np.linalg.solve(A[m] + ridge * eye + penalty, R[m].reshape(n_knots, -1))
        U[:, :, :, m] = Um.reshape(n_knots, D, K).transpose(1, 2, 0)
    return U


def estimate_waveforms(V, X, basis, samples, block_samples, n_knots,
                       drift_sd, ridge=1.0):
    """Estimate the waveform dictionary from a signal and a spike train.

    Parameters
    ----------
    V : np.ndarray
        Signal, shape (n_samples, n_channels).
    X : scipy.sparse matrix
        Spike train, shape (n_samples, n_templates).
    basis : np.ndarray
        Waveform basis, shape (n_window_samples, n_components).
    samples : tuple of int
        First and last sample offset of the waveform window.
    block_samples : float
        Samples per drift knot.
    n_knots : int
        Number of drift knots.
    drift_sd : float
        Standard deviation of waveform change between knots (noise units).
    ridge : float
        See `solve_waveforms`.

    Returns
    -------
    U : np.ndarray
        Shape (components, channels, knots, templates).

    """
    times, templates, amplitudes = spikes_from_train(X)
    stats = empty_statistics(basis.shape[1], V.shape[1], n_knots, X.shape[1])
    w = knot_weights(times, block_samples, n_knots)
    accumulate_statistics(stats, V, times, templates, amplitudes, w, basis, samples)
    return solve_waveforms(stats, drift_sd, ridge)


def reconstruct(X, U, basis, samples, n_samples, block_samples, chunk=2000):
    """Signal predicted by spike train X and dictionary U, shape (n_samples, K)."""
    D, K, n_knots, M = U.shape
    offsets = np.arange(samples[0], samples[1] + 1)
    # sample-domain templates, shape (T, K, knots, templates)
    W = np.einsum('td,dkjm->tkjm', basis, U)
    V_hat = np.zeros((n_samples, K))

    times, templates, amplitudes = spikes_from_train(X)
    ok = (times + samples[0] >= 0) & (times + samples[1] < n_samples)
    times, templates, amplitudes = times[ok], templates[ok], amplitudes[ok]
    w = knot_weights(times, block_samples, n_knots)
    for i in range(0, times.size, chunk):
        t = times[i : i + chunk]
        m = templates[i : i + chunk]
        wave = np.zeros((t.size, offsets.size, K))
        for j in range(n_knots):
            wave += w[i : i + chunk, j, None, None] * W[:, :, j, m].transpose(2, 0, 1)
        wave *= amplitudes[i : i + chunk, None, None]
        np.add.at(V_hat, t[:, None] + offsets[None, :], wave)
    return V_hat


def residuals(V, X, U, basis, samples, block_samples):
    """Signal minus its reconstruction."""
    return V - reconstruct(X, U, basis, samples, V.shape[0], block_samples)
