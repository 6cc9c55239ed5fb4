import json
import logging
import math
from pathlib import Path
logger = logging.getLogger(__name__)

import h5py
import numpy as np
from scipy.io import loadmat
from scipy.signal import resample_poly
from scipy.sparse import csc_matrix
from tqdm import tqdm

from bpsort.preprocessing import (
    get_highpass_filter, highpass_filter, resample_factors, detect_artifacts
    )


def load_probe(probe_path):
    """Load a .mat probe file from Kilosort2, or a .json probe file.

    Returns
    -------
    probe : dict
        Keys 'chanMap' (int32), 'xc', 'yc' and 'kcoords' (float32) with one
        entry per recorded channel, and 'n_chan'.

    """
    probe_path = Path(probe_path).resolve()
    if probe_path.suffix == '.mat':
        mat = loadmat(probe_path)
        connected = mat['connected'].ravel().astype('bool')
        probe = {
            'chanMap': (mat['chanMap'] - 1).ravel().astype(np.int32)[connected],
            'xc': mat['xcoords'].ravel().astype(np.float32)[connected],
            'yc': mat['ycoords'].ravel().astype(np.float32)[connected],
            }
        kc = mat.get('kcoords', None)
        if kc is None:
            probe['kcoords'] = np.zeros(probe['xc'].size, dtype=np.float32)
        else:
            probe['kcoords'] = kc.ravel().astype(np.float32)[connected]
    elif probe_path.suffix == '.json':
        with open(probe_path, 'r') as f:
            probe = json.load(f)
        for k in list(probe.keys()):
            v = probe[k]
            if isinstance(v, list):
                dtype = np.int32 if k == 'chanMap' else np.float32
                probe[k] = np.array(v, dtype=dtype)
    else:
        raise ValueError(f'Unrecognized probe file type: {probe_path.suffix}')

    return check_probe(probe)


def check_probe(probe):
    """Validate a probe dictionary and fill in optional keys."""
    for k in ['xc', 'yc']:
        if k not in probe:
            raise ValueError(f"Probe is missing required key '{k}'.")
    probe = probe.copy()
    probe['xc'] = np.asarray(probe['xc'], dtype=np.float32)
    probe['yc'] = np.asarray(probe['yc'], dtype=np.float32)
    n = probe['xc'].size
    if 'chanMap' not in probe:
        probe['chanMap'] = np.arange(n, dtype=np.int32)
    if 'kcoords' not in probe:
        probe['kcoords'] = np.zeros(n, dtype=np.float32)
    probe['n_chan'] = n

    for k, v in probe.items():
        if isinstance(v, np.ndarray) and v.size != n:
            raise ValueError('All probe variables must have the same length.')

    return probe


def save_probe(probe_dict, filepath):
    """Save a probe dictionary to a .json text file."""
    if Path(filepath).suffix != '.json':
        raise ValueError(
            'Probe files must end in .json to be recognized by `load_probe`.'
            )

    d = probe_dict.copy()
    for k in list(d.keys()):
        v = d[k]
        if isinstance(v, np.ndarray):
            d[k] = v.tolist()
        elif isinstance(v, np.integer):
            d[k] = int(v)

    Path(filepath).parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'w') as f:
        f.write(json.dumps(d))


class FilteredRecording:
    """Highpass filtered view of a recording.

    Parameters
    ----------
    data : array-like
        Raw samples of shape (n_samples, n_channels), for example a numpy
        array or a `np.memmap` of a binary file.
    fs : float
        Sampling rate of `data` (Hz).
    highpass : tuple of float; optional.
        Stop band and pass band edge (Hz) of the highpass filter. If None,
        samples are returned unfiltered.
    scale : float; default=1.
        Factor converting raw values to signal units (e.g. microvolts).

    """

    def __init__(self, data, fs, highpass=(400, 600), scale=1.0):
        if data.ndim != 2:
            raise ValueError(f'Recording must be 2-dimensional, got shape {data.shape}.')
        self.data = data
        self.fs = float(fs)
        self.scale = scale
        self.sos = None if highpass is None else get_highpass_filter(self.fs, highpass)
        # Extra samples read on each side so filter transients stay outside
        # the requested range.
        self.margin = int(round(0.02 * self.fs))

    @property
    def n_samples(self):
        return self.data.shape[0]

    @property
    def n_channels(self):
        return self.data.shape[1]

    def __len__(self):
        return self.n_samples

    def read(self, start, stop):
        """Filtered samples in [start, stop) as float32, shape (n, n_channels)."""
        start = max(0, start)
        stop = min(stop, self.n_samples)
        a = max(0, start - self.margin)
        b = min(self.n_samples, stop + self.margin)
        X = np.asarray(self.data[a:b], dtype=np.float64) * self.scale
        if self.sos is not None and X.shape[0] > 1:
            X = highpass_filter(X, self.sos)
        return X[start - a : stop - a].astype(np.float32)


class BlockStore:
    """Signal resampled to `fs` and cleaned of artifacts, stored in HDF5.

    The file holds a dataset 'V' of shape (n_samples, n_channels), chunked
    along processing blocks, and a dataset 'artifact' with one flag per
    artifact block. The attribute 'n_blocks_written' is the number of blocks
    committed so far, or inf once the whole recording has been written.

    Parameters
    ----------
    filename : str or pathlib.Path
        Location of the HDF5 file. An existing file is reused.
    n_channels : int
        Number of channels in the probe layout.
    fs : float
        Sampling rate (Hz) of the stored signal.
    block_size, artifact_block_size : float
        Durations (s) of processing blocks and artifact blocks.
    artifact_thresh : float
        See `preprocessing.detect_artifacts`.

    """

    def __init__(self, filename, n_channels, fs, block_size=60,
                 artifact_block_size=0.25, artifact_thresh=25):
        self.filename = Path(filename)
        self.n_channels = int(n_channels)
        self.fs = float(fs)
        self.block_samples = int(round(block_size * fs))
        self.artifact_samples = int(round(artifact_block_size * fs))
        self.artifact_thresh = artifact_thresh
        self.file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        if self.file is not None:
            self.file.close()
            self.file = None

    def _open(self, mode='r'):
        if self.file is None or (mode != 'r' and self.file.mode == 'r'):
            self.close()
            self.file = h5py.File(self.filename, mode)
        return self.file

    @property
    def n_blocks_written(self):
        if not self.filename.is_file():
            return 0
        f = self._open()
        if 'V' not in f:
            return 0
        return float(f['V'].attrs['n_blocks_written'])

    @property
    def complete(self):
        return math.isinf(self.n_blocks_written)

    @property
    def n_samples(self):
        return self._open()['V'].shape[0]

    @property
    def n_blocks(self):
        return math.ceil(self.n_samples / self.block_samples)

    @property
    def artifact(self):
        return self._open()['artifact'][:].astype(bool)

    def __len__(self):
        return self.n_samples

    def read(self, start, stop):
        """Stored samples in [start, stop), zero-filled outside the recording."""
        V = self._open()['V']
        n = V.shape[0]
        X = np.zeros((stop - start, self.n_channels), dtype=np.float32)
        a, b = max(0, start), min(n, stop)
        if b > a:
            X[a - start : b - start] = V[a:b]
        return X

    def write(self, recording, progress_bar=None):
        """Resample, clean and store `recording`, resuming an earlier write.

        Parameters
        ----------
        recording : FilteredRecording
            Or any object with attributes `fs`, `n_channels`, `n_samples` and
            a method `read(start, stop)` returning filtered samples.
        progress_bar : tqdm.tqdm; optional.
            Used instead of a new tqdm progress bar.

        Raises
        ------
        ValueError
            If the recording's channel count differs from the store's, or an
            existing incomplete file was written for a different recording.

        """
        if self.complete:
            logger.info(f'Signal store {self.filename} is complete, reusing it.')
            return

        if recording.n_channels != self.n_channels:
            raise ValueError(
                f'Recording has {recording.n_channels} channels but the probe '
                f'layout has {self.n_channels}.'
                )

        p, q = resample_factors(recording.fs, self.fs)
        raw_block = int(round(self.block_samples * recording.fs / self.fs))
        raw_art = int(round(self.artifact_samples * recording.fs / self.fs))
        n_art_total = recording.n_samples // raw_art
        n_raw = n_art_total * raw_art
        N = n_art_total * self.artifact_samples
        n_blocks = math.ceil(n_raw / raw_block)
        if n_blocks == 0:
            raise ValueError('Recording is shorter than one artifact block.')

        f = self._open('a')
        if 'V' not in f:
            chunk = (min(self.block_samples, N), self.n_channels)
            V = f.create_dataset('V', shape=(N, self.n_channels), dtype='float32',
                                 chunks=chunk)
            f.create_dataset('artifact', shape=(n_art_total,), dtype='uint8')
            V.attrs['fs'] = self.fs
            V.attrs['block_samples'] = self.block_samples
            V.attrs['artifact_samples'] = self.artifact_samples
            V.attrs['n_blocks_written'] = 0.0
        V, artifact = f['V'], f['artifact']
        if V.shape != (N, self.n_channels) or V.attrs['block_samples'] != self.block_samples:
            raise ValueError(
                f'Existing signal store {self.filename} does not match this recording.'
                )

        start = int(V.attrs['n_blocks_written'])
        logger.info(f'Writing signal store with {n_blocks} blocks to {self.filename}, '
                    f'starting at block {start}.')
        blocks_per_art = self.block_samples // self.artifact_samples

        if progress_bar is None:
            progress_bar = tqdm(total=n_blocks, initial=start, miniters=1,
                                mininterval=30 if n_blocks > 100 else 0,
                                leave=True)
        for i in range(start, n_blocks):
            X = recording.read(i * raw_block, min((i + 1) * raw_block, n_raw))
            if p != q:
                X = resample_poly(X, p, q, axis=0)
            sb = i * self.block_samples
            se = min(sb + self.block_samples, N)
            X = _fit_length(X, se - sb).astype(np.float32)

            flags = detect_artifacts(X, self.artifact_samples, self.artifact_thresh)
            sa = i * blocks_per_art
            if i > 0 and artifact[sa - 1]:
                flags[0] = True
            for j in np.nonzero(flags)[0]:
                X[j * self.artifact_samples : (j + 1) * self.artifact_samples] = 0

            V[sb:se] = X
            if i > 0 and flags[0]:
                V[sb - self.artifact_samples : sb] = 0
                artifact[sa - 1] = 1
            artifact[sa : sa + flags.size] = flags.astype(np.uint8)
            if flags.any():
                logger.debug(f'Block {i}: {flags.sum()} artifact blocks zeroed.')

            # Commit only after data and flags of block i are written.
            f.flush()
            V.attrs['n_blocks_written'] = float(i + 1)
            f.flush()
            progress_bar.update(1)

        V.attrs['n_blocks_written'] = np.inf
        f.flush()
        progress_bar.close()
        logger.info(f'Signal store complete: {N} samples, '
                    f'{int(artifact[:].sum())} of {n_art_total} artifact blocks flagged.')


def _fit_length(X, n):
    """Crop or zero-pad X along time to exactly n samples."""
    if X.shape[0] >= n:
        return X[:n]
    pad = np.zeros((n - X.shape[0], X.shape[1]), dtype=X.dtype)
    return np.concatenate([X, pad], axis=0)


def save_results(results_dir, X, U, priors, ops=None):
    """Save a fitted model to numpy files in `results_dir`.

    Spikes are saved as three aligned arrays: `spike_times.npy` (samples),
    `spike_templates.npy` and `amplitudes.npy`. The dictionary is saved to
    `templates.npy`, priors to `priors.npy` and `ops` to `ops.npy`.

    """
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)

    X = csc_matrix(X)
    times, templates = X.nonzero()
    isort = np.lexsort((templates, times))
    times, templates = times[isort], templates[isort]
    amplitudes = np.asarray(X[times, templates]).ravel()

    np.save(results_dir / 'spike_times.npy', times.astype(np.int64))
    np.save(results_dir / 'spike_templates.npy', templates.astype(np.int32))
    np.save(results_dir / 'amplitudes.npy', amplitudes.astype(np.float32))
    np.save(results_dir / 'templates.npy', np.asarray(U))
    np.save(results_dir / 'priors.npy', np.asarray(priors))
    ops = {} if ops is None else ops.copy()
    ops['n_samples'] = X.shape[0]
    np.save(results_dir / 'ops.npy', np.array(ops))


def load_results(results_dir):
    """Load results saved by `save_results`.

    Returns
    -------
    X : scipy.sparse.csc_matrix
    U : np.ndarray
    priors : np.ndarray
    ops : dict

    """
    results_dir = Path(results_dir)
    times = np.load(results_dir / 'spike_times.npy')
    templates = np.load(results_dir / 'spike_templates.npy')
    amplitudes = np.load(results_dir / 'amplitudes.npy')
    U = np.load(results_dir / 'templates.npy')
    priors = np.load(results_dir / 'priors.npy')
    ops = np.load(results_dir / 'ops.npy', allow_pickle=True).item()
    X = csc_matrix((amplitudes, (times, templates)),
                   shape=(ops['n_samples'], U.shape[-1]))
    return X, U, priors, ops
