import pytest
import numpy as np
from scipy.sparse import csc_matrix

from bpsort import io


class InterruptedRecording:
    """Raises after `n_reads` calls to `read`, to simulate a crash."""

    def __init__(self, recording, n_reads):
        self.recording = recording
        self.fs = recording.fs
        self.n_channels = recording.n_channels
        self.n_samples = recording.n_samples
        self.n_reads = n_reads

    def read(self, start, stop):
        if self.n_reads == 0:
            raise RuntimeError('Interrupted')
        self.n_reads -= 1
        return self.recording.read(start, stop)


@pytest.fixture()
def noise_data():
    # 5 seconds plus a partial artifact block, 4 channels
    rng = np.random.default_rng(0)
    data = rng.standard_normal((5*12000 + 100, 4)).astype(np.float32)
    # Artifact in the last quarter second of the second block.
    data[21000:24000] *= 1000
    return data


def make_store(filename):
    return io.BlockStore(filename, n_channels=4, fs=12000, block_size=1,
                         artifact_block_size=0.25, artifact_thresh=25)


def test_probe_io(tmp_path):
    probe = {
        'chanMap': np.arange(5),
        'xc': np.ones(5),
        'yc': np.arange(5),
        'kcoords': np.zeros(5),
        'n_chan': 5
    }
    filename = tmp_path / 'probe.json'
    io.save_probe(probe, filename)
    probe2 = io.load_probe(filename)
    for k in ['chanMap', 'xc', 'yc', 'kcoords', 'n_chan']:
        assert np.all(probe[k] == probe2[k])

    with pytest.raises(ValueError):
        io.save_probe(probe, tmp_path / 'probe.txt')

    # Missing optional keys are filled in.
    probe3 = io.check_probe({'xc': [0, 0], 'yc': [0, 20]})
    assert probe3['n_chan'] == 2
    assert np.all(probe3['chanMap'] == np.arange(2))


def test_filtered_recording():
    fs = 12000
    t = np.arange(2*fs) / fs
    data = np.stack([np.sin(2*np.pi*100*t), np.sin(2*np.pi*2000*t)], axis=1)
    rec = io.FilteredRecording(data, fs, highpass=(400, 600), scale=2.0)
    assert rec.n_samples == 2*fs
    assert rec.n_channels == 2

    X = rec.read(fs // 2, fs)
    assert X.dtype == np.float32
    assert X.shape == (fs // 2, 2)
    assert np.abs(X[:, 0]).max() < 0.1
    assert np.abs(X[:, 1]).max() > 1.8

    # Reads past the end are truncated.
    assert rec.read(2*fs - 10, 2*fs + 10).shape == (10, 2)

    with pytest.raises(ValueError):
        io.FilteredRecording(np.zeros(10), fs)


def test_store_write(noise_data, tmp_path):
    rec = io.FilteredRecording(noise_data, 12000, highpass=None)
    with make_store(tmp_path / 'data.h5') as store:
        assert store.n_blocks_written == 0
        assert not store.complete
        store.write(rec)
        assert store.complete
        # Cropped to a whole number of artifact blocks.
        assert store.n_samples == 60000
        assert store.n_blocks == 5

        # Artifact in the last artifact block of block 1 spreads to its
        # neighbor and into the first artifact block of block 2.
        assert np.all(np.nonzero(store.artifact)[0] == [6, 7, 8])
        V = store.read(0, store.n_samples)
        assert np.all(V[18000:27000] == 0)
        assert np.all(V[:18000] != 0)
        assert np.all(V[27000:] != 0)
        assert np.allclose(V[27000:30000], noise_data[27000:30000])

        # Reads outside the recording are zero filled.
        X = store.read(-10, 10)
        assert np.all(X[:10] == 0)
        assert np.allclose(X[10:], noise_data[:10])

        # A complete store is reused without reading the recording.
        store.write(InterruptedRecording(rec, 0))


def test_store_resume(noise_data, tmp_path):
    rec = io.FilteredRecording(noise_data, 12000, highpass=None)
    with make_store(tmp_path / 'full.h5') as store:
        store.write(rec)
        V_full = store.read(0, store.n_samples)
        art_full = store.artifact

    # Interrupted while reading block 2, directly after the artifact.
    store = make_store(tmp_path / 'resumed.h5')
    with pytest.raises(RuntimeError):
        store.write(InterruptedRecording(rec, 2))
    assert store.n_blocks_written == 2
    store.close()

    with make_store(tmp_path / 'resumed.h5') as store:
        assert not store.complete
        store.write(rec)
        assert store.complete
        assert np.array_equal(store.read(0, store.n_samples), V_full)
        assert np.array_equal(store.artifact, art_full)


def test_store_channel_mismatch(noise_data, tmp_path):
    rec = io.FilteredRecording(noise_data[:, :3], 12000, highpass=None)
    with make_store(tmp_path / 'data.h5') as store:
        with pytest.raises(ValueError):
            store.write(rec)


def test_store_resampling(tmp_path):
    rng = np.random.default_rng(1)
    data = rng.standard_normal((4*24000, 4)).astype(np.float32)
    rec = io.FilteredRecording(data, 24000, highpass=None)
    with make_store(tmp_path / 'data.h5') as store:
        store.write(rec)
        assert store.n_samples == 4*12000


def test_results_io(tmp_path):
    times = np.array([5, 10, 10, 40])
    templates = np.array([1, 0, 2, 1])
    amplitudes = np.array([1.0, 0.8, 1.2, 1.5])
    X = csc_matrix((amplitudes, (times, templates)), shape=(100, 3))
    U = np.random.default_rng(0).standard_normal((6, 4, 2, 3))
    priors = np.array([0.01, 0.02, 0.01])
    io.save_results(tmp_path / 'results', X, U, priors, {'nskip': 1})

    assert np.all(np.load(tmp_path / 'results' / 'spike_times.npy') == [5, 10, 10, 40])
    assert np.all(np.load(tmp_path / 'results' / 'spike_templates.npy') == [1, 0, 2, 1])

    X2, U2, priors2, ops = io.load_results(tmp_path / 'results')
    assert (X2 != X).nnz == 0
    assert np.allclose(U2, U)
    assert np.allclose(priors2, priors)
    assert ops['nskip'] == 1
    assert ops['n_samples'] == 100
