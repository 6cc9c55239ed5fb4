import logging
logger = logging.getLogger(__name__)

import numpy as np
import torch

from bpsort import templates, template_matching, waveforms
from bpsort.preprocessing import Whitener
from bpsort.utils import channel_distances


class BPEngine:
    """Binary pursuit fitting primitives and their configuration.

    Holds the waveform basis, drift parameters and thresholds, and exposes
    one method per fitting step. `dt` (seconds of signal per drift knot) and
    `drift_rate` are set by the caller to match the data being processed.

    Parameters
    ----------
    probe : dict
        Probe layout with keys 'xc' and 'yc'.
    settings : dict
        Formatted like `DEFAULT_SETTINGS`.
    basis : np.ndarray
        Waveform basis, shape (window samples, components).
    n_knots : int
        Number of drift knots.
    device : torch.device

    """

    def __init__(self, probe, settings, basis, n_knots, device=torch.device('cpu')):
        self.probe = probe
        self.fs = settings['fs']
        self.samples = tuple(settings['samples'])
        self.basis = np.asarray(basis, dtype=np.float64)
        self.n_knots = n_knots
        self.dt = settings['block_size']
        self.drift_rate = settings['drift_rate']
        self.pruning_radius = settings['pruning_radius']
        self.pruning_threshold = settings['pruning_threshold']
        self.merge_threshold = settings['merge_threshold']
        self.ridge = settings['waveform_ridge']
        self.temporal_filter_length = settings['temporal_filter_length']
        self.refractory = int(round(settings['refractory_time'] * self.fs / 1000))
        self.amplitude_range = tuple(settings['amplitude_range'])
        self.max_peels = settings['max_peels']
        self.split_min_spikes = settings['split_min_spikes']
        self.split_separation = settings['split_separation']
        self.split_min_fraction = settings['split_min_fraction']
        self.distances = channel_distances(probe)
        self.device = device
        self.whitener = None

        T = self.samples[1] - self.samples[0] + 1
        if self.basis.shape[0] != T:
            raise ValueError(
                f'Waveform basis has {self.basis.shape[0]} rows but the window '
                f'{self.samples} has {T} samples.'
                )

    @property
    def block_samples(self):
        """Samples per drift knot."""
        return self.dt * self.fs

    @property
    def drift_sd(self):
        """Waveform change between consecutive knots, in noise units."""
        return self.drift_rate * self.dt

    def estimate_waveforms(self, V, X):
        return waveforms.estimate_waveforms(
            V, X, self.basis, self.samples, self.block_samples, self.n_knots,
            self.drift_sd, self.ridge
            )

    def residuals(self, V, X, U):
        return waveforms.residuals(V, X, U, self.basis, self.samples,
                                   self.block_samples)

    def merge(self, U, priors, X=None):
        return templates.merge_templates(U, priors, self.merge_threshold, X)

    def prune(self, U):
        return templates.prune_waveforms(U, self.distances, self.pruning_radius,
                                         self.pruning_threshold)

    def estimate_spikes(self, V, U, priors):
        return template_matching.estimate_spikes(
            V, U, priors, self.basis, self.samples, self.block_samples,
            refractory=self.refractory, amplitude_range=self.amplitude_range,
            max_peels=self.max_peels, device=self.device
            )

    def split(self, U, X, priors):
        return templates.split_templates(
            U, X, priors, self.split_min_spikes, self.split_separation,
            self.split_min_fraction
            )

    def whiten_data(self, V, X, U):
        """Estimate the whitening transform from the residual and apply it to V."""
        residual = self.residuals(V, X, U)
        self.whitener = Whitener.from_residual(
            residual, order=self.temporal_filter_length, device=self.device
            )
        return self.whitener.apply(V)

    def estimate_by_block(self, store, U, priors, progress_bar=None):
        if self.whitener is None:
            raise RuntimeError('Whitening transform not estimated. Run whiten_data() first!')
        return template_matching.estimate_by_block(
            store, self.whitener, U, priors, self.basis, self.samples,
            self.drift_sd, ridge=self.ridge, refractory=self.refractory,
            amplitude_range=self.amplitude_range, max_peels=self.max_peels,
            device=self.device, progress_bar=progress_bar
            )

    def order_templates(self, U, X, priors, order='yx'):
        U, X, priors, _ = templates.order_templates(U, X, priors, self.probe, order)
        return U, X, priors
