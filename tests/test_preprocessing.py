import pytest
import numpy as np
from scipy.signal import lfilter
import torch

import bpsort.preprocessing as bpp


np.random.seed(123)

class TestFiltering:
    # 2 seconds of time samples at 12kHz, 1 channel
    t = np.linspace(0, 2, 24000, False)[:, np.newaxis]
    # 100hz and 1500hz signals
    sine_100hz = np.sin(2*np.pi*100*t)
    sine_1500hz = np.sin(2*np.pi*1500*t)
    sos = bpp.get_highpass_filter(12000, (400, 600))

    def test_highpass_filter(self):
        filtered_100hz = bpp.highpass_filter(self.sine_100hz, self.sos)
        filtered_1500hz = bpp.highpass_filter(self.sine_1500hz, self.sos)
        # Skip edges, where the filter is affected by padding.
        assert np.abs(filtered_100hz[1000:-1000]).max() < 0.01
        assert np.abs(filtered_1500hz[1000:-1000]).max() > 0.95

    def test_bad_edges(self):
        with pytest.raises(ValueError):
            bpp.get_highpass_filter(12000, (600, 400))
        with pytest.raises(ValueError):
            bpp.get_highpass_filter(1000, (400, 600))


def test_resample_factors():
    assert bpp.resample_factors(30000, 12000) == (2, 5)
    assert bpp.resample_factors(12000, 12000) == (1, 1)
    assert bpp.resample_factors(20000, 12000) == (3, 5)


def test_detect_artifacts():
    X = np.random.randn(10*100, 3)
    X[500:600, 1] *= 100
    flags = bpp.detect_artifacts(X, 100, 25)
    assert flags.shape == (10,)
    assert np.all(np.nonzero(flags)[0] == [4, 5, 6])

    # Artifacts at the edges only spread inward.
    X = np.random.randn(10*100, 3)
    X[:100] *= 100
    flags = bpp.detect_artifacts(X, 100, 25)
    assert np.all(np.nonzero(flags)[0] == [0, 1])


def test_whitening_from_covariance():
    A = torch.randn(4, 4, dtype=torch.float64)
    CC = A @ A.T + torch.eye(4, dtype=torch.float64)
    Wrot = bpp.whitening_from_covariance(CC)
    assert torch.allclose(Wrot @ CC @ Wrot.T, torch.eye(4, dtype=torch.float64),
                          atol=1e-4)
    # ZCA whitening matrix is symmetric
    assert torch.allclose(Wrot, Wrot.T)


class TestWhitener:
    n = 100000
    mixing = np.array([[1.0, 0.5, 0.0],
                       [0.5, 1.0, 0.3],
                       [0.0, 0.3, 2.0]])
    white = np.random.randn(n, 3)
    # Same AR(1) process on every channel, mixed across channels.
    colored = lfilter([1.0], [1.0, -0.6], white, axis=0) @ mixing.T

    def test_whitened_covariance(self, torch_device):
        whitener = bpp.Whitener.from_residual(self.colored, order=5,
                                              device=torch_device)
        assert whitener.order == 5
        assert np.isclose(whitener.temporal_filter[0], 1)
        assert np.isclose(whitener.temporal_filter[1], -0.6, atol=0.02)

        Y = whitener.apply(self.colored)
        assert Y.dtype == np.float32
        C = np.cov(Y.T)
        assert np.allclose(C, np.eye(3), atol=0.05)
        # Temporal correlation is removed.
        lag1 = (Y[1:] * Y[:-1]).mean(0) / (Y**2).mean(0)
        assert np.all(np.abs(lag1) < 0.05)

    def test_zeroed_samples_ignored(self, torch_device):
        X = self.colored.copy()
        X[:20000] = 0
        whitener = bpp.Whitener.from_residual(X, order=2, device=torch_device)
        C = np.cov(whitener.apply(X)[20010:].T)
        assert np.allclose(C, np.eye(3), atol=0.1)

        with pytest.raises(ValueError):
            bpp.Whitener.from_residual(np.zeros((100, 3)), order=2)

    def test_to_dict(self):
        whitener = bpp.Whitener.from_residual(self.colored, order=0)
        d = whitener.to_dict()
        assert np.all(d['temporal_filter'] == [1.0])
        assert d['Wrot'].shape == (3, 3)
