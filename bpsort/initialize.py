from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import math
import os
logger = logging.getLogger(__name__)

from numba import njit
from numba.types import bool_
import numpy as np
from scipy.sparse import csc_matrix
import torch

from bpsort.mixture import DriftingMixture
from bpsort.spikedetect import detect_spikes, extract_snippets, extract_features
from bpsort.utils import channel_order


@dataclass(frozen=True)
class GroupResult:
    """Clusters found on one channel group."""
    index: int
    channels: np.ndarray
    # mean feature trajectories, shape (n_channels * n_pc, n_bins, n_clusters)
    mu: np.ndarray
    # spike times in samples
    times: np.ndarray
    assignment: np.ndarray

    @property
    def n_clusters(self):
        return self.mu.shape[2]


def channel_groups(probe, order='y', num_channels=5):
    """Overlapping windows of `num_channels` channels along `order`.

    Consecutive groups are shifted by one channel. If the probe has no more
    than `num_channels` channels, a single group with all of them is returned.

    """
    chans = channel_order(probe, order)
    if chans.size <= num_channels:
        return [chans]
    return [chans[i : i + num_channels]
            for i in range(chans.size - num_channels + 1)]


def load_subset(store, max_samples):
    """Load at most `max_samples` samples of the stored signal.

    If the recording is longer, the first `round(block_samples / nskip)`
    samples of each complete processing block are concatenated.

    Returns
    -------
    V : np.ndarray
        Signal subset, shape (n_subset, n_channels).
    subset : dict
        'nskip', 'n_blocks' (number of knots) and 'fraction', the fraction of
        a processing block's duration represented by each block of V.

    """
    N = store.n_samples
    block = store.block_samples
    nskip = math.ceil(N / max_samples)
    n_blocks = max(1, N // block)
    if nskip == 1:
        V = store.read(0, N)
    else:
        sub = int(round(block / nskip))
        V = np.zeros((n_blocks * sub, store.n_channels), dtype=np.float32)
        for i in range(n_blocks):
            V[i*sub : (i+1)*sub] = store.read(i*block, i*block + sub)
    fraction = (V.shape[0] / n_blocks) / block
    logger.info(f'Using {V.shape[0]} of {N} samples for fitting '
                f'(nskip = {nskip}, {n_blocks} blocks).')
    return V, {'nskip': nskip, 'n_blocks': n_blocks, 'fraction': fraction}


def sort_group(index, X, channels, settings, fs, dt_mu, drift_rate,
               device=torch.device('cpu')):
    """Detect, extract features and cluster spikes on one channel group."""
    Xg = X[:, channels]
    win = settings['init_extract_win']
    n_pc = settings['init_num_pc']
    p = channels.size * n_pc
    times = detect_spikes(Xg, settings['init_detect_thresh'], win, device=device)

    if times.size < 2 * (p + 1):
        logger.debug(f'Group {index}: {times.size} spikes detected, skipping.')
        return GroupResult(index, channels, np.zeros((p, 1, 0)), times,
                           np.zeros(times.size, dtype=np.int64))

    features = extract_features(extract_snippets(Xg, times, win), n_pc)
    model = DriftingMixture(
        df=settings['init_sort_df'],
        cluster_cost=settings['init_sort_cluster_cost'],
        drift_rate=drift_rate, dt_mu=dt_mu,
        tolerance=settings['init_sort_tolerance'],
        cov_ridge=settings['init_sort_cov_ridge']
        ).fit(features, times / fs * 1000)
    logger.debug(f'Group {index}: {times.size} spikes, {model.n_clusters} clusters.')
    return GroupResult(index, channels, model.mu, times, model.cluster())


def sort_groups(X, groups, settings, fs, dt_mu, drift_rate,
                device=torch.device('cpu')):
    """Cluster all channel groups in parallel, results ordered by group."""
    n_workers = settings.get('n_workers', None)
    if n_workers is None:
        n_workers = os.cpu_count() or 1
    n_workers = max(1, min(n_workers, len(groups)))

    def run(args):
        i, chans = args
        return sort_group(i, X, chans, settings, fs, dt_mu, drift_rate, device)

    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        results = list(executor.map(run, enumerate(groups)))
    return results


def cluster_magnitudes(result, n_pc):
    """Norm of each cluster's mean waveform per channel, shape (n_channels, n_clusters)."""
    n_feat, n_bins, n_clusters = result.mu.shape
    mu = result.mu.reshape(n_feat // n_pc, n_pc, n_bins, n_clusters)
    return (mu**2).sum(axis=(1, 2))**0.5


@njit("(int64[:], int64[:], float64[:], float64)")
def sweep_duplicates(spikes, clusters, mag, refrac):
    '''Keep the larger of two spikes closer than `refrac` samples.

    `spikes` must be sorted. The surviving spike is compared with the next one.
    '''
    keep = np.ones(spikes.size, bool_)
    prev = 0
    for i in range(1, spikes.size):
        if spikes[i] - spikes[prev] < refrac:
            if mag[clusters[i]] < mag[clusters[prev]]:
                keep[i] = False
            else:
                keep[prev] = False
                prev = i
        else:
            prev = i
    return keep


def remove_duplicate_clusters(results, n_samples, num_channels, n_pc, refrac,
                              drop_thresh):
    """Combine clusters of overlapping channel groups into one spike train.

    A cluster is kept if its peak channel is the center channel of its group.
    Clusters of the first group peaking left of the center and of the last
    group peaking right of the center are kept as well. Spikes of kept
    clusters closer than `refrac` samples are resolved in favor of the
    cluster with larger peak magnitude. Clusters that lose more than
    `1 - drop_thresh` of their spikes in this way are dropped.

    Parameters
    ----------
    results : list of GroupResult
        Ordered by group index.
    n_samples : int
        Number of samples of the clustered signal.
    num_channels : int
        Number of channels per group.
    n_pc : int
        Number of features per channel.
    refrac : float
        Minimum separation (samples) between spikes of different clusters.
    drop_thresh : float
        Minimum fraction of spikes a cluster must keep.

    Returns
    -------
    X0 : scipy.sparse.csc_matrix
        Spike train of shape (n_samples, n_clusters) with ones at spike times.

    """
    center = (num_channels - 1) // 2
    last = len(results) - 1

    # First pass: select clusters and count their spikes.
    selected = []
    for g, res in enumerate(results):
        if res.n_clusters == 0:
            continue
        mag = cluster_magnitudes(res, n_pc)
        peak = mag.argmax(axis=0)
        for j in range(res.n_clusters):
            if (peak[j] == center or (g == 0 and peak[j] < center)
                    or (g == last and peak[j] > center)):
                count = int((res.assignment == j).sum())
                if count > 0:
                    selected.append((g, j, count, float(mag[peak[j], j])))

    n_clusters = len(selected)
    counts = np.array([s[2] for s in selected], dtype=np.int64)
    mags = np.array([s[3] for s in selected], dtype=np.float64)
    total = int(counts.sum())
    logger.info(f'{n_clusters} clusters with {total} spikes centered on their groups.')

    # Second pass: fill pre-sized arrays in group order.
    spikes = np.zeros(total, dtype=np.int64)
    clusters = np.zeros(total, dtype=np.int64)
    k = 0
    for c, (g, j, count, _) in enumerate(selected):
        res = results[g]
        spikes[k : k + count] = res.times[res.assignment == j]
        clusters[k : k + count] = c
        k += count

    order = np.argsort(spikes, kind='stable')
    spikes, clusters = spikes[order], clusters[order]
    keep = sweep_duplicates(spikes, clusters, mags, float(refrac))
    spikes, clusters = spikes[keep], clusters[keep]

    frac = np.bincount(clusters, minlength=n_clusters) / np.maximum(counts, 1)
    good = frac >= drop_thresh
    in_good = good[clusters]
    spikes, clusters = spikes[in_good], clusters[in_good]
    new_id = np.cumsum(good) - 1
    clusters = new_id[clusters]
    n_good = int(good.sum())
    logger.info(f'{n_good} clusters with {spikes.size} spikes kept after '
                'removing duplicates.')

    return csc_matrix((np.ones(spikes.size), (spikes, clusters)),
                      shape=(n_samples, n_good))


def initialize(V, probe, settings, nskip=1, device=torch.device('cpu')):
    """Initial spike train from clustering overlapping channel groups.

    Returns
    -------
    X0 : scipy.sparse.csc_matrix
        Spike train with one column per initial template.
    results : list of GroupResult

    """
    fs = settings['fs']
    groups = channel_groups(probe, settings['init_channel_order'],
                            settings['init_num_channels'])
    dt_mu = settings['block_size'] / nskip * 1000
    drift_rate = settings['init_sort_drift_rate'] * nskip
    logger.info(f'Clustering {len(groups)} channel groups.')
    results = sort_groups(V, groups, settings, fs, dt_mu, drift_rate, device)

    refrac = settings['init_overlap_time'] * fs / 1000
    X0 = remove_duplicate_clusters(
        results, V.shape[0], settings['init_num_channels'],
        settings['init_num_pc'], refrac, settings['init_drop_cluster_thresh']
        )
    return X0, results
