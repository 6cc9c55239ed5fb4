import pytest
import numpy as np

from bpsort import DEFAULT_SETTINGS
from bpsort.engine import BPEngine
from bpsort.spikedetect import (
    detect_spikes, extract_snippets, extract_features, learn_waveform_basis
    )
from bpsort.simulation import make_waveform, simulate_recording


samples = (-12, 24)


@pytest.fixture()
def recording():
    n = 24000
    w = make_waveform(samples, 1, 3, amplitude=15)
    times = np.arange(200, n - 200, 250)
    X = simulate_recording([w], [times], n, samples, noise_sd=1., seed=2)
    return X, times, w


def test_detect_spikes(recording, torch_device):
    X, times, _ = recording
    found = detect_spikes(X, 5, (-8, 19), device=torch_device)
    assert found.size == times.size
    assert np.all(np.abs(found - times) <= 1)

    # Peaks too close to the edges are skipped.
    found = detect_spikes(X[times[0] - 5:], 5, (-8, 19), device=torch_device)
    assert found.size == times.size - 1

    assert detect_spikes(X[:0], 5, (-8, 19)).size == 0


def test_extract_features(recording):
    X, times, _ = recording
    snippets = extract_snippets(X, times, (-8, 19))
    assert snippets.shape == (times.size, 28, 3)
    features = extract_features(snippets, 3)
    assert features.shape == (times.size, 9)
    # Peak channel carries the largest projections.
    magnitude = np.abs(features.mean(0)).reshape(3, 3).sum(1)
    assert magnitude.argmax() == 1


def test_learn_waveform_basis(recording):
    X, times, w = recording
    B = learn_waveform_basis(X, times, samples, 4)
    T = samples[1] - samples[0] + 1
    assert B.shape == (T, 4)
    assert np.allclose(B.T @ B, np.eye(4), atol=1e-6)
    # The spike waveform is well represented by the basis.
    v = w[:, 1] / np.linalg.norm(w[:, 1])
    assert np.linalg.norm(B.T @ v) > 0.95

    # Too few snippets: orthonormal DCT basis.
    B = learn_waveform_basis(X, times[:2], samples, 4)
    assert B.shape == (T, 4)
    assert np.allclose(B.T @ B, np.eye(4), atol=1e-6)
    assert np.allclose(B[:, 0], 1 / np.sqrt(T))

    with pytest.raises(ValueError):
        learn_waveform_basis(X, times, samples, T)


def test_engine_basis_shape(linear_probe):
    with pytest.raises(ValueError):
        BPEngine(linear_probe, DEFAULT_SETTINGS, np.eye(10)[:, :3], 1)
    engine = BPEngine(linear_probe, DEFAULT_SETTINGS, np.eye(37)[:, :6], 3)
    engine.dt = 6
    engine.drift_rate = 0.01
    assert engine.block_samples == 6 * 12000
    assert np.isclose(engine.drift_sd, 0.06)
    assert engine.refractory == 6
