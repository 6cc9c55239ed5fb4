import importlib.util
import logging
import pprint
logger = logging.getLogger(__name__)

import numpy as np
import psutil
import torch

# pynvml is only needed for GPU utilization, memory stats work without it.
_NVML_EXISTS = importlib.util.find_spec('pynvml') is not None


def get_performance():
    """Get resource usage information.

    Returns
    -------
    perf : dict
        Dictionary with keys 'cpu' and 'gpu'. 'cpu' holds
        {'util', 'mem_avail', 'mem_total', 'mem_used', 'mem_pct'}; 'gpu' holds
        the same keys plus {'alloc', 'max_alloc'}, or is None if CUDA is not
        available.

    Notes
    -----
    Values include resources used by other processes, so that a crash caused
    by exhausting system resources can be recognized in the log. 'util' and
    '_pct' entries are percentages, other entries are in GB.

    """
    memory = psutil.virtual_memory()
    total = memory.total / 2**30
    avail = memory.available / 2**30
    perf = {
        'cpu': {
            'util': psutil.cpu_percent(), 'mem_avail': avail,
            'mem_total': total, 'mem_used': total - avail,
            'mem_pct': memory.percent
            },
        'gpu': None
        }

    if torch.cuda.is_available():
        gpu_avail, gpu_total = [b / 2**30 for b in torch.cuda.mem_get_info()]
        perf['gpu'] = {
            'util': torch.cuda.utilization() if _NVML_EXISTS else None,
            'mem_avail': gpu_avail, 'mem_total': gpu_total,
            'mem_used': gpu_total - gpu_avail,
            'mem_pct': (gpu_total - gpu_avail) / gpu_total * 100,
            'alloc': torch.cuda.memory_allocated() / 2**30,
            'max_alloc': torch.cuda.max_memory_allocated() / 2**30,
            }

    return perf


def log_performance(log=None, level=None, header=None, reset=False):
    """Log usage information for cpu, memory, gpu, and gpu memory.

    Parameters
    ----------
    log : logging.Logger; optional.
        Logger object used to write the text. If not provided, the logger for
        `bpsort.utils` will be used.
    level : str; optional.
        Logging level to use, 'debug' by default.
    header : str; optional.
        Text to output before usage information.
    reset : bool; default=False.
        If True, reset peak cuda memory stats after logging report.

    """
    perf = get_performance()
    log_fn = getattr(log if log is not None else logger,
                     level if level is not None else 'debug')

    if header is not None:
        log_fn(' ')
        log_fn(f'{header}')

    cpu = perf['cpu']
    log_fn('*'*56)
    log_fn(f"CPU usage:    {cpu['util']:5.2f} %")
    log_fn(f"Mem used:     {cpu['mem_pct']:5.2f} %     | {cpu['mem_used']:10.2f} GB")
    log_fn(f"Mem avail:    {cpu['mem_avail']:5.2f} / {cpu['mem_total']:5.2f} GB")
    log_fn('-'*54)

    gpu = perf['gpu']
    if gpu is None:
        log_fn('GPU usage:    N/A')
        log_fn('GPU memory:   N/A')
    else:
        if gpu['util'] is not None:
            log_fn(f"GPU usage:    {gpu['util']:5.2f} %")
        log_fn(f"GPU memory:   {gpu['mem_pct']:5.2f} %     |{gpu['mem_used']:10.2f}   / {gpu['mem_total']:8.2f} GB")
        log_fn(f"Allocated:    {gpu['alloc']:10.2f} GB, max {gpu['max_alloc']:10.2f} GB")
    log_fn('*'*56)

    if reset and torch.cuda.is_available():
        torch.cuda.reset_peak_memory_stats()


def probe_as_string(probe):
    """Format probe dictionary as copy-pasteable-to-code string."""
    opt = np.get_printoptions()
    np.set_printoptions(threshold=np.inf)

    p = pprint.pformat(probe, indent=4, sort_dicts=False)
    p = 'np.array'.join(p.split('array'))
    p = 'dtype=np.'.join(p.split('dtype='))
    probe_text = "probe = " + p[0] + '\n ' + p[1:-1] + '\n' + p[-1]

    np.set_printoptions(**opt)
    return probe_text


def ops_as_string(ops):
    """Format scalar and short entries of `ops` for the log file."""
    ops_copy = {}
    for k, v in ops.items():
        if k in ['settings', 'probe']:
            continue
        if isinstance(v, np.ndarray) and v.size > 10:
            v = f'array, shape={v.shape}'
        ops_copy[k] = v
    p = pprint.pformat(ops_copy, indent=4, sort_dicts=False)
    return "ops = " + p[0] + '\n ' + p[1:-1] + '\n' + p[-1]


def channel_order(probe, order):
    """Indices of the probe's channels in the requested traversal order.

    Parameters
    ----------
    probe : dict
        Probe layout with keys 'xc' and 'yc'.
    order : str
        One of 'x', 'y', 'xy', 'yx'. Channels are sorted by the first
        coordinate named, ties are broken by the second (or by channel index).

    Returns
    -------
    np.ndarray
        Channel indices (rows of the signal) in traversal order.

    """
    if order not in ['x', 'y', 'xy', 'yx']:
        raise ValueError(f"Channel order must be 'x', 'y', 'xy' or 'yx', not {order}.")
    coords = {'x': np.asarray(probe['xc']), 'y': np.asarray(probe['yc'])}
    index = np.arange(coords['x'].size)
    # np.lexsort sorts by the last key first.
    keys = [index] + [coords[c] for c in order[::-1]]
    return np.lexsort(keys)


def channel_distances(probe):
    """Pairwise euclidean distances between channels, shape (K, K)."""
    xc = np.asarray(probe['xc'], dtype=np.float64)
    yc = np.asarray(probe['yc'], dtype=np.float64)
    return ((xc[:, None] - xc[None, :])**2 + (yc[:, None] - yc[None, :])**2)**0.5
