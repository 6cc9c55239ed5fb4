import logging
import warnings
logger = logging.getLogger(__name__)

import numpy as np
from scipy.sparse import csc_matrix
from sklearn.mixture import GaussianMixture

from bpsort.utils import channel_order


def cosine_similarity(U):
    """Cosine similarity of vectorized templates, shape (M, M)."""
    M = U.shape[-1]
    vec = U.reshape(-1, M).T
    norms = np.linalg.norm(vec, axis=1)
    norms[norms == 0] = 1
    vec = vec / norms[:, None]
    return vec @ vec.T


def merge_templates(U, priors, threshold=0.85, X=None):
    """Merge templates whose waveforms are nearly identical.

    The most similar pair is merged first, into the prior-weighted average
    of both waveforms with the sum of both priors, and similarities are
    recomputed until no pair reaches `threshold`.

    Parameters
    ----------
    U : np.ndarray
        Dictionary, shape (components, channels, knots, templates).
    priors : np.ndarray
    threshold : float
        Minimum cosine similarity of merged templates.
    X : scipy.sparse matrix; optional.
        Spike train; if given, columns of merged templates are added up.

    Returns
    -------
    U, priors : np.ndarray
    X : scipy.sparse.csc_matrix or None
    merged : bool

    """
    U = np.array(U, dtype=np.float64)
    priors = np.array(priors, dtype=np.float64)
    n_templates = U.shape[-1]
    groups = [[m] for m in range(n_templates)]

    while U.shape[-1] > 1:
        S = cosine_similarity(U)
        S[np.tril_indices_from(S)] = -np.inf
        i, j = np.unravel_index(np.argmax(S), S.shape)
        if S[i, j] < threshold:
            break
        p = priors[i] + priors[j]
        wi = priors[i] / p if p > 0 else 0.5
        U[..., i] = wi * U[..., i] + (1 - wi) * U[..., j]
        priors[i] = p
        U = np.delete(U, j, axis=-1)
        priors = np.delete(priors, j)
        groups[i] = groups[i] + groups.pop(j)
        logger.debug(f'Merged templates {i} and {j} (similarity {S[i, j]:.3f}).')

    merged = len(groups) < n_templates
    if X is not None and merged:
        rows = np.concatenate(groups).astype(np.int64)
        cols = np.concatenate([np.full(len(g), k) for k, g in enumerate(groups)])
        G = csc_matrix((np.ones(rows.size), (rows, cols)),
                       shape=(rows.size, len(groups)))
        X = csc_matrix(csc_matrix(X) @ G)
    elif X is not None:
        X = csc_matrix(X)
    return U, priors, X, merged


def prune_waveforms(U, distances, radius=100, threshold=1.5):
    """Sparsify the dictionary.

    Coefficients whose magnitude stays below `threshold` at every knot are
    zeroed. Then, channels further than `radius` from the template's peak
    channel (largest remaining energy) are zeroed. Pruning twice gives the
    same result as pruning once.

    Parameters
    ----------
    U : np.ndarray
        Dictionary, shape (components, channels, knots, templates).
    distances : np.ndarray
        Pairwise channel distances, shape (channels, channels).

    """
    U = np.array(U, dtype=np.float64)
    small = np.abs(U).max(axis=2) < threshold
    U[np.broadcast_to(small[:, :, None, :], U.shape)] = 0

    energy = (U**2).sum(axis=(0, 2))
    peak = energy.argmax(axis=0)
    far = distances[peak].T > radius
    U[np.broadcast_to(far[None, :, None, :], U.shape)] = 0
    return U


def support_mask(U, tol=1e-6):
    """Nonzero coefficients at any knot, shape (components, channels, 1, templates)."""
    return (np.abs(U).max(axis=2) > tol)[:, :, None, :]


def split_templates(U, X, priors, min_spikes=50, separation=2.0,
                    min_fraction=0.1, random_state=0):
    """Split templates with a bimodal amplitude distribution.

    A one- and a two-component Gaussian mixture are fit to each template's
    spike amplitudes. The template is split if the two-component model has
    the lower BIC, the smaller component holds at least `min_fraction` of the
    spikes and the components are separated by Ashman's D of at least
    `separation`. The spikes of the larger-amplitude mode move to a new
    template that starts with a copy of the waveform; amplitudes of both
    parts are reset to 1.

    Returns
    -------
    U : np.ndarray
    X : scipy.sparse.csc_matrix
    priors : np.ndarray
    split : bool

    """
    X = csc_matrix(X)
    n, M = X.shape
    rows, cols, vals = [], [], []
    new_waveforms = []
    n_new = 0

    for m in range(M):
        r = X.indices[X.indptr[m] : X.indptr[m+1]]
        a = X.data[X.indptr[m] : X.indptr[m+1]]
        high = None
        if a.size >= min_spikes and np.ptp(a) > 0:
            high = _bimodal_split(a, separation, min_fraction, random_state)
        if high is None:
            rows.append(r)
            cols.append(np.full(r.size, m))
            vals.append(a)
            continue
        new = M + n_new
        n_new += 1
        rows.extend([r[~high], r[high]])
        cols.extend([np.full((~high).sum(), m), np.full(high.sum(), new)])
        vals.extend([np.ones((~high).sum()), np.ones(high.sum())])
        new_waveforms.append(U[..., m])
        logger.debug(f'Split template {m}: {(~high).sum()} + {high.sum()} spikes.')

    M_new = M + n_new
    if n_new > 0:
        U = np.concatenate([U, np.stack(new_waveforms, axis=-1)], axis=-1)
    X = csc_matrix((np.concatenate(vals) if vals else np.zeros(0),
                    (np.concatenate(rows) if rows else np.zeros(0, dtype=np.int64),
                     np.concatenate(cols) if cols else np.zeros(0, dtype=np.int64))),
                   shape=(n, M_new))
    priors = np.diff(X.indptr) / n
    return U, X, priors, n_new > 0


def _bimodal_split(a, separation, min_fraction, random_state):
    """Boolean mask of the larger-amplitude mode, or None if unimodal."""
    a = a.reshape(-1, 1)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        gm1 = GaussianMixture(n_components=1, random_state=random_state).fit(a)
        gm2 = GaussianMixture(n_components=2, n_init=3,
                              random_state=random_state).fit(a)
    if gm2.bic(a) >= gm1.bic(a):
        return None

    mu = gm2.means_.ravel()
    var = gm2.covariances_.ravel()
    ashman_d = np.sqrt(2) * np.abs(mu[0] - mu[1]) / np.sqrt(var[0] + var[1])
    labels = gm2.predict(a)
    high = labels == np.argmax(mu)
    fraction = min(high.mean(), 1 - high.mean())
    if ashman_d < separation or fraction < min_fraction:
        return None
    return high


def order_templates(U, X, priors, probe, order='yx'):
    """Sort templates by the position of their peak channel.

    Returns
    -------
    U, X, priors
        Permuted consistently.
    perm : np.ndarray
        New template m is old template perm[m].

    """
    chans = channel_order(probe, order)
    rank = np.empty(chans.size, dtype=np.int64)
    rank[chans] = np.arange(chans.size)
    peak = (np.asarray(U)**2).sum(axis=(0, 2)).argmax(axis=0)
    perm = np.argsort(rank[peak], kind='stable')
    return U[..., perm], csc_matrix(X)[:, perm], np.asarray(priors)[perm], perm
