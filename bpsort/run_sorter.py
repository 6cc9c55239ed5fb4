import logging
import platform
import shutil
import tempfile
import time
from pathlib import Path
logger = logging.getLogger(__name__)

import numpy as np
import torch

import bpsort
from bpsort.engine import BPEngine
from bpsort.initialize import initialize, load_subset
from bpsort.io import BlockStore, FilteredRecording, check_probe, save_results
from bpsort.parameters import DEFAULT_SETTINGS, compare_settings
from bpsort.spikedetect import learn_waveform_basis
from bpsort.templates import support_mask
from bpsort.utils import log_performance, probe_as_string, ops_as_string
from bpsort.waveforms import spikes_from_train

RECOGNIZED_SETTINGS = list(DEFAULT_SETTINGS.keys())


def check_settings(settings):
    """Merge `settings` with the defaults and validate them.

    Raises
    ------
    ValueError
        For unrecognized keys, for `dt` (derived from `block_size`), if
        `block_size` is not an integer multiple of `artifact_block_size`, or
        if the waveform window does not contain sample 0.

    """
    settings = {} if settings is None else settings
    if 'dt' in settings:
        raise ValueError('Cannot set parameter dt. Use block_size instead!')

    unrecognized = [k for k in settings if k not in RECOGNIZED_SETTINGS]
    if len(unrecognized) > 0:
        logger.info('See `bpsort.run_sorter.RECOGNIZED_SETTINGS`')
        raise ValueError(f'Unrecognized settings: {unrecognized}')

    settings = {**DEFAULT_SETTINGS, **settings}
    ratio = settings['block_size'] / settings['artifact_block_size']
    if (ratio + 1e-5) % 1 >= 2e-5:
        raise ValueError(
            f"block_size ({settings['block_size']}) must be an integer multiple "
            f"of artifact_block_size ({settings['artifact_block_size']})."
            )

    samples = settings['samples']
    if not samples[0] <= 0 <= samples[1]:
        raise ValueError(f'Waveform window {samples} must contain sample 0.')

    return settings


def setup_logger(log_dir, verbose_console=False):
    log_dir = Path(log_dir)

    # Get root logger for the bpsort package
    bp_log = logging.getLogger('bpsort')
    bp_log.setLevel(logging.DEBUG)

    # File handler at debug level, with timestamps and logging level.
    file = logging.FileHandler(log_dir / 'bpsort.log', mode='w')
    file.setLevel(logging.DEBUG)
    text_format = '%(asctime)s %(name)-12s %(levelname)-8s %(message)s'
    file_formatter = logging.Formatter(text_format)
    file.setFormatter(file_formatter)

    # Console handler at info level with shorter messages, unless verbose
    # output is requested. Skipped if handlers were already added.
    if not bp_log.handlers:
        console = logging.StreamHandler()
        if verbose_console:
            console.setLevel(logging.DEBUG)
            console.setFormatter(file_formatter)
        else:
            console.setLevel(logging.INFO)
            console.setFormatter(logging.Formatter('%(name)-12s: %(message)s'))
        bp_log.addHandler(console)

    bp_log.addHandler(file)


def close_logger():
    bp_log = logging.getLogger('bpsort')
    for handler in bp_log.handlers.copy():
        bp_log.removeHandler(handler)
        handler.close()


def initialize_model(store, probe, settings, device, tic0=np.nan):
    """Load the fitting subset, cluster it and whiten it.

    Returns
    -------
    V : np.ndarray
        Whitened signal subset.
    X : scipy.sparse.csc_matrix
        Initial spike train.
    engine : BPEngine
        Configured for the subset, with the whitening transform estimated.
    info : dict
        Subset layout ('nskip', 'n_blocks', 'fraction') and the per-group
        clustering results ('group_results').

    """
    tic = time.time()
    logger.info(' ')
    logger.info('Initializing model')
    logger.info('-'*40)

    V, subset = load_subset(store, settings['max_samples'])
    X, group_results = initialize(V, probe, settings, subset['nskip'], device)
    logger.info(f'{X.shape[1]} initial templates, {X.nnz} spikes.')

    times = spikes_from_train(X)[0]
    if settings['waveform_basis'] is None:
        basis = learn_waveform_basis(V, times, settings['samples'], settings['n_basis'])
    else:
        basis = settings['waveform_basis']

    engine = BPEngine(probe, settings, basis, subset['n_blocks'], device=device)
    # Drift per knot stays the same on the subset and on the full signal.
    engine.dt = settings['block_size'] * subset['fraction']
    engine.drift_rate = settings['drift_rate'] / subset['fraction']

    U = engine.estimate_waveforms(V, X)
    V = engine.whiten_data(V, X, U)
    if settings['waveform_basis'] is None:
        engine.basis = learn_waveform_basis(V, times, settings['samples'],
                                            settings['n_basis'])

    elapsed = time.time() - tic
    total = time.time() - tic0
    logger.info(f'Initialization done in {elapsed:.2f}s; total {total:.2f}s')
    log_performance(logger, 'debug', 'Resource usage after initialization')

    subset['group_results'] = group_results
    return V, X, engine, subset


def fit_model(V, X, engine, settings, tic0=np.nan):
    """Alternate waveform estimation, merging, pruning, pursuit and splitting.

    Merging and splitting are enabled until the number of templates stops
    growing beyond the largest number seen so far, or a round neither merged
    nor followed a split. Then `settle_rounds` rounds are run with a fixed
    number of templates, counting the round in which this happened.

    Returns
    -------
    U : np.ndarray
        Whitened-scale, pruned dictionary.
    X : scipy.sparse.csc_matrix
    priors : np.ndarray
    history : list of int
        Number of templates after each round.

    """
    tic = time.time()
    logger.info(' ')
    logger.info('Fitting model')
    logger.info('-'*40)

    n = V.shape[0]
    priors = np.diff(X.indptr) / n
    state = 'alternate'
    did_split = True
    max_count = 0
    n_settled = 0
    history = []

    while state != 'done':
        keep = np.diff(X.indptr) > 0
        if not keep.all():
            logger.info(f'Dropping {(~keep).sum()} templates without spikes.')
            X, priors = X[:, keep], priors[keep]

        U = engine.estimate_waveforms(V, X)

        if state == 'alternate':
            U, priors, X, merged = engine.merge(U, priors, X)
            n_templates = U.shape[-1]
            if n_templates <= max_count or (not did_split and not merged):
                state = 'settle'
                logger.info(f'Model order stable at {n_templates} templates.')
            elif len(history) + 1 >= settings['max_rounds']:
                state = 'settle'
                logger.warning(f"No stable model after {settings['max_rounds']} "
                               f"rounds, continuing with {n_templates} templates.")
            else:
                max_count = n_templates

        U = engine.prune(U)
        X, priors = engine.estimate_spikes(V, U, priors)

        if state == 'alternate':
            U, X, priors, did_split = engine.split(U, X, priors)
        else:
            n_settled += 1
            if n_settled >= settings['settle_rounds']:
                state = 'done'

        history.append(int(U.shape[-1]))
        logger.info(f'Round {len(history)}: {U.shape[-1]} templates, '
                    f'{X.nnz} spikes ({state})')

    elapsed = time.time() - tic
    total = time.time() - tic0
    logger.info(f'Model fit in {len(history)} rounds, {elapsed:.2f}s; total {total:.2f}s')
    log_performance(logger, 'debug', 'Resource usage after fitting')
    return U, X, priors, history


def final_pass(store, U, X, priors, engine, settings, fraction, tic0=np.nan,
               progress_bar=None):
    """Binary pursuit on the full signal with the fitted dictionary.

    Returns the spike train, the dictionary re-estimated on the unwhitened
    signal restricted to the support of the whitened dictionary, and priors.

    """
    tic = time.time()
    logger.info(' ')
    logger.info('Final pass over full signal')
    logger.info('-'*40)

    U, X, priors = engine.order_templates(U, X, priors, order='yx')
    mask = support_mask(U)
    engine.dt = settings['block_size']
    engine.drift_rate = engine.drift_rate * fraction
    X, U_raw, priors = engine.estimate_by_block(store, U, priors,
                                                progress_bar=progress_bar)
    U_raw = U_raw * mask

    elapsed = time.time() - tic
    total = time.time() - tic0
    logger.info(f'Final pass done in {elapsed:.2f}s; total {total:.2f}s')
    log_performance(logger, 'debug', 'Resource usage after final pass')
    return X, U_raw, priors, U


class BPSorter:
    """Binary pursuit spike sorting session.

    A session owns a working directory holding the signal store and log file.
    It is 'configured' after construction and 'ready' once the signal store is
    complete. Use it as a context manager, or call `close`, to remove the
    working directory; with `debug=True` the directory is kept.

    Parameters
    ----------
    probe : dict
        Probe layout with keys 'xc' and 'yc' (and optionally 'chanMap',
        'kcoords'), one entry per channel of the recording.
    settings : dict; optional.
        Entries override `DEFAULT_SETTINGS`.
    device : torch.device; optional.
        Device for PyTorch computations. CUDA is used if available.
    verbose_console : bool; default=False.
        If True, debug messages are also printed to the console.

    Raises
    ------
    ValueError
        For invalid settings or probe, before any file is created.

    Examples
    --------
    >>> with BPSorter(probe, {'fs': 30000}) as bps:
    ...     bps.read_data(FilteredRecording(data, fs=30000))
    ...     X, U, priors = bps.fit()

    """

    def __init__(self, probe, settings=None, device=None, verbose_console=False):
        settings = check_settings(settings)
        probe = check_probe(probe)

        if device is None:
            if torch.cuda.is_available():
                device = torch.device('cuda')
            else:
                device = torch.device('cpu')
        self.device = device
        self.verbose_console = verbose_console

        if settings['temp_dir'] is None:
            name = time.strftime('BP_%Y%m%d_%H%M%S')
            temp_dir = Path(tempfile.gettempdir()) / name
        else:
            temp_dir = Path(settings['temp_dir'])
        if temp_dir.is_dir() and not settings['debug']:
            shutil.rmtree(temp_dir)
        temp_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir = temp_dir

        self.store = BlockStore(
            temp_dir / 'data.h5', probe['n_chan'], settings['fs'],
            settings['block_size'], settings['artifact_block_size'],
            settings['artifact_thresh']
            )
        self.ops = {'settings': settings, 'probe': probe,
                    'temp_dir': str(temp_dir)}
        self.state = 'ready' if self.store.complete else 'configured'

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        """Close the signal store and remove the working directory unless debugging."""
        self.store.close()
        if not self.ops['settings']['debug'] and self.temp_dir.is_dir():
            shutil.rmtree(self.temp_dir)
        self.state = 'closed'

    def read_data(self, recording=None, fs=None, progress_bar=None):
        """Write `recording` to the signal store, resuming an incomplete write.

        `recording` may be None if the store is already complete. A 2-D array
        of raw samples (n_samples, n_channels) recorded at `fs` Hz is
        wrapped in a `FilteredRecording` using the `highpass` setting.

        """
        if self.state == 'closed':
            raise RuntimeError('Session has been closed.')
        if isinstance(recording, np.ndarray):
            if fs is None:
                raise ValueError('Sampling rate `fs` is required for array input.')
            recording = FilteredRecording(
                recording, fs, highpass=self.ops['settings']['highpass']
                )
        if recording is None:
            if not self.store.complete:
                raise ValueError('A recording is required to initialize the signal store.')
        else:
            self.store.write(recording, progress_bar=progress_bar)
        self.state = 'ready'

    def fit(self, results_dir=None, progress_bar=None):
        """Fit the binary pursuit model to the stored signal.

        Parameters
        ----------
        results_dir : str or pathlib.Path; optional.
            If given, results are saved there with `io.save_results` and the
            log file is written there instead of the working directory.
        progress_bar : tqdm.tqdm; optional.
            Used for the final pass over the signal.

        Returns
        -------
        X : scipy.sparse.csc_matrix
            Spike train with amplitudes, shape (n_samples, n_templates).
        U : np.ndarray
            Dictionary, shape (components, channels, knots, templates).
        priors : np.ndarray
            Fraction of samples with a spike, per template.

        Raises
        ------
        RuntimeError
            If the signal store has not been initialized with `read_data`.

        """
        if self.state != 'ready':
            raise RuntimeError('Temporary data file not initialized. '
                               'Run read_data() first!')

        log_dir = self.temp_dir if results_dir is None else Path(results_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        setup_logger(log_dir, self.verbose_console)

        try:
            logger.info(f"bpsort version {bpsort.__version__}")
            logger.info(f"Python version {platform.python_version()}")
            logger.info(f'Using {self.device} for PyTorch computations.')
            logger.info('-'*40)

            settings = self.ops['settings']
            probe = self.ops['probe']
            modified, _ = compare_settings(settings)
            logger.info(f'Modified settings: {modified}')
            logger.debug(f"Probe dictionary:\n\n{probe_as_string(probe)}\n")
            log_performance(logger, 'info', 'Resource usage before fitting')

            tic0 = time.time()
            np.random.seed(1)
            torch.random.manual_seed(1)

            V, X, engine, info = initialize_model(self.store, probe, settings,
                                                  self.device, tic0=tic0)
            U, X, priors, history = fit_model(V, X, engine, settings, tic0=tic0)
            del V
            X, U, priors, Uw = final_pass(
                self.store, U, X, priors, engine, settings, info['fraction'],
                tic0=tic0, progress_bar=progress_bar
                )

            self.ops['n_blocks'] = info['n_blocks']
            self.ops['nskip'] = info['nskip']
            self.ops['template_counts'] = history
            self.ops['basis'] = engine.basis
            self.ops['runtime'] = time.time() - tic0
            if settings['debug']:
                self.ops['whitener'] = engine.whitener.to_dict()
                self.ops['group_results'] = info['group_results']
                self.ops['Uw'] = Uw
            logger.debug(f"Final ops:\n\n{ops_as_string(self.ops)}\n")

            if results_dir is not None:
                saved = {k: v for k, v in self.ops.items()
                         if k in ['settings', 'n_blocks', 'nskip', 'template_counts',
                                  'basis', 'runtime']}
                save_results(results_dir, X, U, priors, saved)

            logger.info(f'Fitting finished: {U.shape[-1]} templates, {X.nnz} spikes '
                        f"in {self.ops['runtime']:.2f}s.")

        except Exception:
            # Make sure the full traceback is written to the log file.
            logger.exception('Encountered error in `BPSorter.fit`:')
            raise

        finally:
            close_logger()

        return X, U, priors
