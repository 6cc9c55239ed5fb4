from concurrent.futures import ThreadPoolExecutor
import logging
logger = logging.getLogger(__name__)

import numpy as np
from scipy.sparse import csc_matrix
import torch
from torch.nn.functional import conv1d, max_pool1d, pad
from tqdm import tqdm

from bpsort.waveforms import (
    knot_weights, interpolate_dictionary, empty_statistics,
    accumulate_statistics, solve_waveforms
    )


def sample_templates(U_snap, basis, device=torch.device('cpu')):
    """Sample-domain templates, shape (templates, channels, window samples)."""
    W = np.einsum('td,dkm->mkt', basis, U_snap)
    return torch.from_numpy(np.ascontiguousarray(W)).float().to(device)


def prepare_matching(W):
    """Template norms, cross-correlations and channel overlap.

    Returns
    -------
    nm : torch.Tensor
        Squared norm of each template, shape (M,).
    ctc : torch.Tensor
        ctc[m, m2, T-1+l] is the change in template m2's projection at lag l
        caused by subtracting one unit of template m, shape (M, M, 2T-1).
    overlap : torch.Tensor
        Boolean (M, M), True if two templates have a channel in common.

    """
    M, K, T = W.shape
    nm = (W**2).sum((1, 2))
    ctc = conv1d(W, W, padding=T-1)
    support = ((W**2).sum(-1) > 0).float()
    overlap = (support @ support.T) > 0
    overlap |= torch.eye(M, dtype=torch.bool, device=W.device)
    return nm, ctc, overlap


def run_pursuit(X, W, log_odds, samples, core=None, refractory=6,
                amplitude_range=(0.5, 2.0), max_peels=100):
    """Greedy binary pursuit on one block of whitened signal.

    A spike of template m at sample s with amplitude a increases the log
    likelihood by a*B - a**2*|W_m|**2/2, where B is the projection of the
    residual onto the template. The amplitude is the least-squares value
    clipped to `amplitude_range`; a spike is accepted when the gain plus the
    log prior odds of the template is positive. In each pass, all candidates
    that are the maximum within one template length, or within `refractory`
    samples if that is longer, are accepted, subtracted
    from the residual projections, and templates sharing channels with an
    accepted spike are blocked within `refractory` samples of it.

    Parameters
    ----------
    X : torch.Tensor
        Whitened signal, shape (channels, n_samples).
    W : torch.Tensor
        Templates, shape (templates, channels, window samples).
    log_odds : torch.Tensor
        log(p / (1-p)) for each template's prior p.
    samples : tuple of int
        First and last sample offset of the waveform window, samples[0] <= 0.
    core : tuple of int; optional.
        Only spikes with core[0] <= s < core[1] are returned. Spikes in the
        rest of the block are still fit, so that partially visible spikes of
        neighboring blocks are explained away.
    refractory : int
        Minimum separation in samples between spikes of overlapping templates.
    amplitude_range : tuple of float
    max_peels : int

    Returns
    -------
    times, templates : np.ndarray
    amplitudes : np.ndarray

    """
    M, K, T = W.shape
    n = X.shape[1]
    if core is None:
        core = (0, n)
    empty = (np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64),
             np.zeros(0, dtype=np.float64))
    if M == 0 or n < T:
        return empty

    device = X.device
    o0 = samples[0]
    nm, ctc, overlap = prepare_matching(W)
    nm = nm.clamp(min=1e-12).unsqueeze(-1)
    amin, amax = amplitude_range

    # B[m, s] is the projection of the window starting at s + o0 onto W[m]
    Xpad = pad(X, (-o0, T - 1 + o0))
    B = conv1d(Xpad.unsqueeze(0), W)[0]

    blocked = torch.zeros((M, n), dtype=torch.bool, device=device)
    blocked[:, :-o0] = True
    blocked[:, n - (T - 1 + o0):] = True

    lags = torch.arange(-(T-1), T, device=device)
    rwin = torch.arange(-refractory, refractory + 1, device=device)
    # spikes accepted in one pass are at least this far apart
    hw = max(T - 1, refractory)
    st, clu, amps = [], [], []

    for _ in range(max_peels):
        a = (B / nm).clamp(amin, amax)
        G = a * B - 0.5 * a**2 * nm + log_odds.unsqueeze(-1)
        G[blocked] = -np.inf

        Gmax, imax = G.max(0)
        Cmax = max_pool1d(Gmax[None, None], 2*hw + 1, stride=1, padding=hw)[0, 0]
        xs = torch.nonzero((Gmax > 0) & (Gmax == Cmax))[:, 0]
        if xs.numel() == 0:
            break

        m = imax[xs]
        amp = a[m, xs]
        st.append(xs)
        clu.append(m)
        amps.append(amp)

        # subtract accepted spikes from all projections
        cols = xs.unsqueeze(-1) + lags
        inside = (cols >= 0) & (cols < n)
        vals = -amp[:, None, None] * ctc[m] * inside.unsqueeze(1)
        rows = torch.arange(M, device=device)[None, :, None].expand_as(vals)
        cols = cols.clamp(0, n - 1).unsqueeze(1).expand_as(vals)
        B.index_put_((rows.reshape(-1), cols.reshape(-1)), vals.reshape(-1),
                     accumulate=True)

        # refractory exclusion for templates sharing channels
        isp, im = torch.nonzero(overlap[m], as_tuple=True)
        rcols = (xs[isp].unsqueeze(-1) + rwin).clamp(0, n - 1)
        blocked[im.unsqueeze(-1).expand_as(rcols), rcols] = True
    else:
        logger.warning(f'Binary pursuit stopped after max_peels={max_peels} '
                       'passes with spikes left above threshold.')

    if len(st) == 0:
        return empty
    st = torch.cat(st).cpu().numpy().astype(np.int64)
    clu = torch.cat(clu).cpu().numpy().astype(np.int64)
    amps = torch.cat(amps).cpu().numpy().astype(np.float64)
    keep = (st >= core[0]) & (st < core[1])
    return st[keep], clu[keep], amps[keep]


def _prior_log_odds(priors, device):
    p = torch.as_tensor(np.asarray(priors, dtype=np.float64), device=device)
    return (torch.log(p) - torch.log1p(-p.clamp(max=1 - 1e-12))).float()


def _block_edges(n, block_samples):
    block_samples = max(1, int(round(block_samples)))
    starts = np.arange(0, n, block_samples)
    return [(int(s), int(min(s + block_samples, n))) for s in starts]


def _to_train(times, templates, amplitudes, n, M):
    X = csc_matrix((amplitudes, (times, templates)), shape=(n, M))
    priors = np.bincount(templates, minlength=M) / n
    return X, priors


def estimate_spikes(V, U, priors, basis, samples, block_samples, refractory=6,
                    amplitude_range=(0.5, 2.0), max_peels=100,
                    device=torch.device('cpu')):
    """Binary pursuit on an in-memory whitened signal.

    The signal is processed in blocks of `block_samples` samples, one per
    drift knot, each using the dictionary interpolated at its center. Blocks
    are extended by one window length on each side.

    Returns
    -------
    X : scipy.sparse.csc_matrix
        Spike train with amplitudes, shape (n_samples, n_templates).
    priors : np.ndarray
        Fraction of samples with a spike, per template.

    """
    n = V.shape[0]
    D, K, n_knots, M = U.shape
    T = samples[1] - samples[0] + 1
    log_odds = _prior_log_odds(priors, device)
    st, clu, amps = [], [], []

    for b0, b1 in _block_edges(n, block_samples):
        p0, p1 = max(0, b0 - T), min(n, b1 + T)
        w = knot_weights([(b0 + b1) / 2], block_samples, n_knots)[0]
        W = sample_templates(interpolate_dictionary(U, w), basis, device)
        Xb = torch.from_numpy(np.ascontiguousarray(V[p0:p1].T)).float().to(device)
        t, m, a = run_pursuit(Xb, W, log_odds, samples, core=(b0 - p0, b1 - p0),
                              refractory=refractory, amplitude_range=amplitude_range,
                              max_peels=max_peels)
        st.append(t + p0)
        clu.append(m)
        amps.append(a)

    X, priors = _to_train(np.concatenate(st), np.concatenate(clu),
                          np.concatenate(amps), n, M)
    logger.debug(f'Binary pursuit found {X.nnz} spikes.')
    return X, priors


def estimate_by_block(store, whitener, U, priors, basis, samples, drift_sd,
                      ridge=1.0, refractory=6, amplitude_range=(0.5, 2.0),
                      max_peels=100, device=torch.device('cpu'),
                      progress_bar=None):
    """Binary pursuit over the whole stored signal, one block at a time.

    Each processing block is read with a margin of one window length plus
    the temporal whitening filter length, whitened, and matched against the
    dictionary interpolated at the block's center. Only spikes inside the
    block are kept, so each spike is reported by exactly one block. The
    waveforms are then re-estimated on the unwhitened signal from the
    regression statistics accumulated over all blocks. Reading the next block
    overlaps with processing the current one.

    Returns
    -------
    X : scipy.sparse.csc_matrix
        Spike train with amplitudes, shape (n_samples, n_templates).
    U : np.ndarray
        Dictionary estimated on the unwhitened signal.
    priors : np.ndarray

    """
    n = store.n_samples
    block_samples = store.block_samples
    D, K, n_knots, M = U.shape
    T = samples[1] - samples[0] + 1
    margin = T + whitener.order
    log_odds = _prior_log_odds(priors, device)
    stats = empty_statistics(D, K, n_knots, M)
    edges = _block_edges(n, block_samples)
    st, clu, amps = [], [], []

    def read(i):
        b0, b1 = edges[i]
        return store.read(b0 - margin, b1 + margin)

    if progress_bar is None:
        progress_bar = tqdm(total=len(edges), miniters=1, leave=True)
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(read, 0)
        for i, (b0, b1) in enumerate(edges):
            raw = future.result()
            if i + 1 < len(edges):
                future = executor.submit(read, i + 1)

            w = knot_weights([(b0 + b1) / 2], block_samples, n_knots)[0]
            W = sample_templates(interpolate_dictionary(U, w), basis, device)
            Xw = whitener.apply(raw)
            Xb = torch.from_numpy(np.ascontiguousarray(Xw.T)).to(device)
            t, m, a = run_pursuit(Xb, W, log_odds, samples,
                                  core=(margin, margin + b1 - b0),
                                  refractory=refractory,
                                  amplitude_range=amplitude_range,
                                  max_peels=max_peels)

            t_abs = t + b0 - margin
            accumulate_statistics(stats, raw, t, m, a,
                                  knot_weights(t_abs, block_samples, n_knots),
                                  basis, samples)
            st.append(t_abs)
            clu.append(m)
            amps.append(a)
            progress_bar.update(1)
    progress_bar.close()

    X, priors = _to_train(np.concatenate(st), np.concatenate(clu),
                          np.concatenate(amps), n, M)
    U_raw = solve_waveforms(stats, drift_sd, ridge)
    logger.info(f'Final pass found {X.nnz} spikes in {len(edges)} blocks.')
    return X, U_raw, priors
