import logging
logger = logging.getLogger(__name__)

import numpy as np
from scipy.fft import dct
import torch
from torch.nn.functional import max_pool1d
from sklearn.decomposition import TruncatedSVD


def noise_std(X):
    """Robust per-channel noise estimate median(|X|)/0.6745, zero replaced by 1."""
    sd = np.median(np.abs(X), axis=0) / 0.6745
    sd[sd == 0] = 1
    return sd


def detect_spikes(X, thresh, win, device=torch.device('cpu')):
    """Times of negative threshold crossings.

    Parameters
    ----------
    X : np.ndarray
        Signal of shape (n_samples, n_channels).
    thresh : float
        Threshold in units of each channel's robust noise standard deviation.
    win : tuple of int
        First and last sample offset of the snippet extracted around each
        spike. Peaks whose snippet does not fit in X are skipped, and only the
        largest peak within half a snippet length is kept.
    device : torch.device

    Returns
    -------
    times : np.ndarray
        Sample index of each detected spike's negative peak.

    """
    n = X.shape[0]
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    Y = torch.from_numpy(-(X / noise_std(X)).astype(np.float32)).to(device)
    Y = Y.max(dim=1).values
    loc = max(1, (win[1] - win[0] + 1) // 2)
    Ymax = max_pool1d(Y[None, None], 2*loc + 1, stride=1, padding=loc)[0, 0]
    ispeak = torch.logical_and(Ymax == Y, Y > thresh)
    ispeak[:max(0, -win[0])] = False
    ispeak[max(0, n - win[1]):] = False
    return ispeak.nonzero()[:, 0].cpu().numpy().astype(np.int64)


def extract_snippets(X, times, win):
    """Snippets X[t + win[0] : t + win[1] + 1] for each t, shape (n, T, C)."""
    offsets = np.arange(win[0], win[1] + 1)
    return X[times[:, None] + offsets[None, :]]


def extract_features(snippets, n_pc):
    """Project each channel's snippets onto its leading singular vectors.

    Snippets are not centered, so the features of a cluster's mean keep the
    magnitude of its waveform on each channel.

    Returns
    -------
    features : np.ndarray
        Shape (n_spikes, n_channels * n_pc); the components of channel c are
        in columns c*n_pc to (c+1)*n_pc.

    """
    n, T, C = snippets.shape
    features = np.zeros((n, C * n_pc), dtype=np.float64)
    n_comp = min(n_pc, n, T - 1)
    if n_comp == 0:
        return features
    for c in range(C):
        model = TruncatedSVD(n_components=n_comp, random_state=0).fit(snippets[:, :, c])
        features[:, c*n_pc : c*n_pc + n_comp] = model.transform(snippets[:, :, c])
    return features


def learn_waveform_basis(X, times, samples, n_basis):
    """Orthonormal temporal basis for waveform windows.

    Snippets around `times` on their peak channel are normalized to unit
    norm and their leading right singular vectors are used as basis. With fewer
    snippets than components, the leading DCT-II functions are used instead.

    Parameters
    ----------
    X : np.ndarray
        Signal, shape (n_samples, n_channels).
    times : np.ndarray
        Spike times (samples).
    samples : tuple of int
        First and last sample offset of the waveform window.
    n_basis : int
        Number of components.

    Returns
    -------
    B : np.ndarray
        Shape (n_window_samples, n_basis) with orthonormal columns.

    """
    T = samples[1] - samples[0] + 1
    if n_basis >= T:
        raise ValueError(f'n_basis ({n_basis}) must be less than the window length ({T}).')

    n = X.shape[0]
    times = times[(times + samples[0] >= 0) & (times + samples[1] < n)]
    clips = extract_snippets(X, times, samples)
    # peak channel of each snippet
    peak = (clips**2).sum(1).argmax(1)
    clips = clips[np.arange(clips.shape[0]), :, peak].astype(np.float64)
    norms = (clips**2).sum(1)**.5
    clips = clips[norms > 0] / norms[norms > 0, None]

    if clips.shape[0] <= n_basis:
        logger.warning(f'Only {clips.shape[0]} snippets available to learn '
                       'the waveform basis, using DCT basis instead.')
        return dct(np.eye(T), norm='ortho', axis=0)[:n_basis].T

    model = TruncatedSVD(n_components=n_basis).fit(clips)
    return model.components_.T
