from fractions import Fraction
import logging
logger = logging.getLogger(__name__)

import numpy as np
from scipy.linalg import solve_toeplitz
from scipy.signal import butter, buttord, lfilter, sosfiltfilt
import torch


def whitening_from_covariance(CC):
    """Whitening matrix for a covariance matrix CC.

    This is the so-called ZCA whitening matrix.

    """
    E, D, V = torch.linalg.svd(CC)
    eps = 1e-6
    Wrot = (E / (D+eps)**.5) @ E.T
    return Wrot


def get_highpass_filter(fs, highpass=(400, 600)):
    """Butterworth highpass filter in second-order sections.

    Parameters
    ----------
    fs : float
        Sampling rate (Hz) of the signal being filtered.
    highpass : tuple of float
        Stop band edge and pass band edge (Hz). The filter order is the
        smallest one with at most 3 dB loss in the pass band and at least
        20 dB attenuation in the stop band.

    """
    stop, passband = highpass
    if not 0 < stop < passband < fs / 2:
        raise ValueError(
            f'Highpass edges must satisfy 0 < stop < pass < fs/2, got {highpass}.'
            )
    order, wn = buttord(passband, stop, gpass=3, gstop=20, fs=fs)
    return butter(order, wn, btype='high', output='sos', fs=fs)


def highpass_filter(X, sos):
    """Zero-phase filtering along the first (time) axis."""
    padlen = min(X.shape[0] - 1, 3 * (2 * len(sos) + 1))
    return sosfiltfilt(sos, X, axis=0, padlen=padlen)


def resample_factors(fs_in, fs_out):
    """Integer up and down factors (p, q) with fs_out = fs_in * p / q."""
    ratio = Fraction(fs_out / fs_in).limit_denominator(1000)
    return ratio.numerator, ratio.denominator


def detect_artifacts(X, artifact_samples, thresh):
    """Flag short blocks containing artifacts.

    Parameters
    ----------
    X : np.ndarray
        Signal of shape (n_samples, n_channels), `n_samples` must be a multiple
        of `artifact_samples`.
    artifact_samples : int
        Number of samples per artifact block.
    thresh : float
        A block is flagged if the robust noise estimate median(|X|)/0.6745 of
        any channel exceeds `thresh`.

    Returns
    -------
    artifact : np.ndarray
        Boolean flag per artifact block. Each flagged block also flags its two
        neighbors.

    """
    n_art = X.shape[0] // artifact_samples
    Xb = X[:n_art*artifact_samples].reshape(n_art, artifact_samples, -1)
    noise = np.median(np.abs(Xb), axis=1) / 0.6745
    artifact = (noise > thresh).any(axis=1)
    artifact = np.convolve(artifact, np.ones(3), mode='same') > 0
    return artifact


class Whitener:
    """Spatiotemporal whitening transform.

    Temporal whitening uses the prediction error filter of an autoregressive
    model fit to the pooled autocovariance of all channels, followed by ZCA
    whitening across channels.

    """

    def __init__(self, temporal_filter, Wrot):
        self.temporal_filter = np.asarray(temporal_filter, dtype=np.float64)
        self.Wrot = np.asarray(Wrot, dtype=np.float64)

    @classmethod
    def from_residual(cls, residual, order=5, device=torch.device('cpu')):
        """Estimate the whitening transform from a residual signal.

        Parameters
        ----------
        residual : np.ndarray
            Signal minus reconstruction, shape (n_samples, n_channels).
        order : int
            Order of the autoregressive model used for temporal whitening.
        device : torch.device
            Device used for the spatial whitening matrix.

        """
        residual = np.asarray(residual, dtype=np.float64)
        # zeroed artifact segments do not carry noise statistics
        valid = np.abs(residual).sum(axis=1) > 0
        if valid.sum() <= order + 1:
            raise ValueError('Not enough non-zero samples to estimate noise statistics.')

        h = np.ones(1)
        if order > 0:
            r = np.zeros(order + 1)
            n = residual.shape[0]
            for lag in range(order + 1):
                r[lag] = np.sum(residual[:n-lag] * residual[lag:]) / (n - lag)
            a = solve_toeplitz(r[:order], r[1:order+1])
            h = np.concatenate([[1.0], -a])

        filtered = lfilter(h, [1.0], residual, axis=0)[valid]
        CC = torch.from_numpy(filtered.T @ filtered / filtered.shape[0]).to(device)
        Wrot = whitening_from_covariance(CC).cpu().numpy()
        logger.debug(f'Temporal whitening filter: {np.round(h, 3)}')
        return cls(h, Wrot)

    @property
    def order(self):
        return self.temporal_filter.size - 1

    def apply(self, X):
        """Whitened copy of X, shape (n_samples, n_channels), float32."""
        Xf = lfilter(self.temporal_filter, [1.0], np.asarray(X, dtype=np.float64), axis=0)
        return (Xf @ self.Wrot.T).astype(np.float32)

    def to_dict(self):
        return {'temporal_filter': self.temporal_filter, 'Wrot': self.Wrot}
