import numpy as np


# Format for parameter specification:
# parameter: {
#     'type': callable datatype for this parameter, like int or float.
#     'min': minimum value allowed (inclusive).
#     'max': maximum value allowed (inclusive).
#     'exclude': list of individual values to exclude from allowed range.
#     'default': default value used by `BPSorter`.
#     'step': which step of the pipeline the parameter is used in, from:
#             ['data', 'initialization', 'whitening', 'waveforms',
#              'templates', 'pursuit', 'convergence', 'session']
#     'description': Explanation of parameter's use.
# }

MAIN_PARAMETERS = {
    'fs': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 12000, 'step': 'data',
        'description':
            """
            Sampling frequency (Hz) of the stored signal. Recordings with a
            different rate are resampled when the signal store is written.
            """
    },

    'block_size': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 60, 'step': 'data',
        'description':
            """
            Duration (s) of one processing block. The signal store is chunked
            along these blocks, waveform drift is modeled with one knot per
            block and the final pass processes one block at a time. Must be
            an integer multiple of `artifact_block_size`.
            """
    },

    'max_samples': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': 20000000, 'step': 'initialization',
        'description':
            """
            Maximum number of samples held in memory while fitting the model.
            Longer recordings are subsampled by using the beginning of each
            processing block.
            """
    },

    'samples': {
        'type': list, 'min': None, 'max': None, 'exclude': [],
        'default': [-12, 24], 'step': 'waveforms',
        'description':
            """
            First and last sample offset (inclusive) of the waveform window,
            relative to the spike time.
            """
    },

    'pruning_radius': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 100, 'step': 'templates',
        'description':
            """
            Channels further than this distance (in probe layout units, usually
            microns) from a template's peak channel are zeroed when pruning.
            """
    },

    'pruning_threshold': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 1.5, 'step': 'templates',
        'description':
            """
            Waveform coefficients with a magnitude below this value (in units
            of whitened noise standard deviation) are zeroed when pruning.
            """
    },

    'merge_threshold': {
        'type': float, 'min': 0, 'max': 1, 'exclude': [],
        'default': 0.85, 'step': 'templates',
        'description':
            """
            Templates whose waveforms have a cosine similarity at or above this
            value are merged.
            """
    },

    'drift_rate': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 0.005, 'step': 'waveforms',
        'description':
            """
            Assumed standard deviation of waveform change per second, in units
            of noise standard deviation. Set to 0 to disable drift modeling.
            """
    },

    'debug': {
        'type': bool, 'min': None, 'max': None, 'exclude': [],
        'default': False, 'step': 'session',
        'description':
            """
            If True, the working directory (signal store and log file) is kept
            after the session is closed and intermediate results are kept in
            `ops` for inspection.
            """
    },

    'temp_dir': {
        'type': str, 'min': None, 'max': None, 'exclude': [],
        'default': None, 'step': 'session',
        'description':
            """
            Working directory for the signal store and the log file. By default
            a new directory named `BP_<date>_<time>` is created in the system's
            temporary directory.
            """
    },
}


EXTRA_PARAMETERS = {
    ### DATA
    'artifact_block_size': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 0.25, 'step': 'data',
        'description':
            """
            Duration (s) of the short blocks used for artifact detection.
            """
    },

    'artifact_thresh': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 25, 'step': 'data',
        'description':
            """
            An artifact block is flagged and zeroed if the robust noise
            estimate median(|V|)/0.6745 of any channel exceeds this value.
            """
    },

    'highpass': {
        'type': list, 'min': None, 'max': None, 'exclude': [],
        'default': [400, 600], 'step': 'data',
        'description':
            """
            Stop band and pass band edge (Hz) of the highpass filter applied
            by `FilteredRecording`.
            """
    },

    ### WAVEFORMS
    'waveform_basis': {
        'type': np.ndarray, 'min': None, 'max': None, 'exclude': [],
        'default': None, 'step': 'waveforms',
        'description':
            """
            Array of shape (n_window_samples, n_components) with orthonormal
            columns, applied to each channel's sample window. If None, a basis
            with `n_basis` components is learned from the initial spikes.
            """
    },

    'n_basis': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': 6, 'step': 'waveforms',
        'description':
            """
            Number of basis components learned when `waveform_basis` is None.
            """
    },

    'waveform_ridge': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 1.0, 'step': 'waveforms',
        'description':
            """
            Ridge penalty for waveform regression, expressed as a number of
            zero-waveform pseudo-spikes. Templates with few spikes are shrunk
            towards zero more strongly.
            """
    },

    ### WHITENING
    'temporal_filter_length': {
        'type': int, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 5, 'step': 'whitening',
        'description':
            """
            Order of the autoregressive model used for temporal whitening.
            Set to 0 for spatial whitening only.
            """
    },

    ### PURSUIT
    'refractory_time': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 0.5, 'step': 'pursuit',
        'description':
            """
            Minimum separation (ms) between accepted spikes of templates that
            share channels.
            """
    },

    'amplitude_range': {
        'type': list, 'min': None, 'max': None, 'exclude': [],
        'default': [0.5, 2.0], 'step': 'pursuit',
        'description':
            """
            Minimum and maximum amplitude scaling of a template for an accepted
            spike.
            """
    },

    'max_peels': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': 100, 'step': 'pursuit',
        'description':
            """
            Maximum number of detection passes per block. Each pass accepts all
            candidates that are local maxima of the detection criterion.
            """
    },

    ### TEMPLATES
    'split_min_spikes': {
        'type': int, 'min': 2, 'max': np.inf, 'exclude': [],
        'default': 50, 'step': 'templates',
        'description':
            """
            Templates with fewer spikes are never split.
            """
    },

    'split_separation': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 2.0, 'step': 'templates',
        'description':
            """
            Minimum Ashman's D between the two amplitude modes for a template
            to be split.
            """
    },

    'split_min_fraction': {
        'type': float, 'min': 0, 'max': 0.5, 'exclude': [],
        'default': 0.1, 'step': 'templates',
        'description':
            """
            Minimum fraction of a template's spikes in the smaller amplitude
            mode for a template to be split.
            """
    },

    ### CONVERGENCE
    'settle_rounds': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': 2, 'step': 'convergence',
        'description':
            """
            Number of rounds run with a fixed number of templates once merging
            and splitting have stopped changing the model.
            """
    },

    'max_rounds': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': 30, 'step': 'convergence',
        'description':
            """
            Maximum number of rounds with merging and splitting enabled.
            """
    },

    ### INITIALIZATION
    'init_channel_order': {
        'type': str, 'min': None, 'max': None, 'exclude': [],
        'default': 'y', 'step': 'initialization',
        'description':
            """
            Order in which channels are traversed to build channel groups for
            initial clustering. One of 'x', 'y', 'xy' or 'yx': channels are
            sorted by the first coordinate, ties broken by the second.
            """
    },

    'init_num_channels': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': 5, 'step': 'initialization',
        'description':
            """
            Number of channels in each group used for initial clustering.
            """
    },

    'init_detect_thresh': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 5, 'step': 'initialization',
        'description':
            """
            Spike detection threshold in units of noise standard deviation.
            """
    },

    'init_extract_win': {
        'type': list, 'min': None, 'max': None, 'exclude': [],
        'default': [-8, 19], 'step': 'initialization',
        'description':
            """
            First and last sample offset (inclusive) of the snippets extracted
            for initial clustering.
            """
    },

    'init_num_pc': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': 3, 'step': 'initialization',
        'description':
            """
            Number of principal components per channel used as features for
            initial clustering.
            """
    },

    'init_drop_cluster_thresh': {
        'type': float, 'min': 0, 'max': 1, 'exclude': [],
        'default': 0.6, 'step': 'initialization',
        'description':
            """
            Clusters that keep less than this fraction of their spikes after
            removing duplicates detected on neighboring channel groups are
            dropped.
            """
    },

    'init_overlap_time': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 0.4, 'step': 'initialization',
        'description':
            """
            Spikes closer than this (ms) are considered the same event when
            combining clusters from different channel groups.
            """
    },

    'init_sort_df': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 5, 'step': 'initialization',
        'description':
            """
            Degrees of freedom of the t-distributed mixture components.
            """
    },

    'init_sort_cluster_cost': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 0.002, 'step': 'initialization',
        'description':
            """
            Penalty per cluster parameter (in nats per spike) for adding a
            cluster to the mixture model.
            """
    },

    'init_sort_drift_rate': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 400 / 3600 / 1000, 'step': 'initialization',
        'description':
            """
            Drift of cluster means per millisecond in the mixture model.
            """
    },

    'init_sort_tolerance': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [0],
        'default': 0.005, 'step': 'initialization',
        'description':
            """
            Convergence tolerance on the per-spike log likelihood of the
            mixture model's EM iterations.
            """
    },

    'init_sort_cov_ridge': {
        'type': float, 'min': 0, 'max': np.inf, 'exclude': [],
        'default': 1.5, 'step': 'initialization',
        'description':
            """
            Value added to the diagonal of the mixture components' covariance.
            """
    },

    'n_workers': {
        'type': int, 'min': 1, 'max': np.inf, 'exclude': [],
        'default': None, 'step': 'initialization',
        'description':
            """
            Number of worker threads used to cluster channel groups. By default
            one per CPU core.
            """
    },
}


# Add default values to descriptions
for k, v in MAIN_PARAMETERS.items():
    s = f"""
        Default value: {str(v["default"])}
        Min, max: ({str(v['min'])}, {str(v['max'])})
        Type: {v['type'].__name__}
        """
    v['description'] += s

for k, v in EXTRA_PARAMETERS.items():
    s = f"""
        Default value: {str(v["default"])}
        Min, max: ({str(v['min'])}, {str(v['max'])})
        Type: {v['type'].__name__}
        """
    v['description'] += s

main_defaults = {k: v['default'] for k, v in MAIN_PARAMETERS.items()}
extra_defaults = {k: v['default'] for k, v in EXTRA_PARAMETERS.items()}
# In the format expected by `BPSorter`
DEFAULT_SETTINGS = {**main_defaults, **extra_defaults}


def compare_settings(settings):
    """Find settings values that differ from the defaults.

    Parameters
    ----------
    settings : dict
        Formatted the same as `DEFAULT_SETTINGS`.

    Returns
    -------
    modified_settings : dict
        Formatted as above, but only contains keys with values that differ
        from the defaults.
    extra_keys : list
        List of keys that appear in `settings` but not `DEFAULT_SETTINGS`.
        These keys are *not* included in `modified_settings`.

    """
    modified_settings = {}
    extra_keys = []

    for k, v in settings.items():
        if k in DEFAULT_SETTINGS:
            default = DEFAULT_SETTINGS[k]
            if isinstance(v, np.ndarray) or isinstance(default, np.ndarray):
                if default is None or not np.array_equal(v, default):
                    modified_settings[k] = v
            elif v != default:
                modified_settings[k] = v
        else:
            extra_keys.append(k)
    return modified_settings, extra_keys
