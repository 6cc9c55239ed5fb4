import logging

import numpy as np
from scipy.sparse import csc_matrix

from bpsort import DEFAULT_SETTINGS
from bpsort.run_sorter import fit_model


class ScriptedEngine:
    """Stands in for `BPEngine`, splitting templates while `splits` says so."""

    def __init__(self, splits):
        self.splits = list(splits)
        self.calls = []

    def estimate_waveforms(self, V, X):
        self.calls.append('waveforms')
        return np.ones((1, 1, 1, X.shape[1]))

    def merge(self, U, priors, X=None):
        self.calls.append('merge')
        return U, priors, X, False

    def prune(self, U):
        self.calls.append('prune')
        return U

    def estimate_spikes(self, V, U, priors):
        self.calls.append('spikes')
        M = U.shape[-1]
        X = csc_matrix((np.ones(M), (np.arange(M), np.arange(M))),
                       shape=(V.shape[0], M))
        return X, np.full(M, 1 / V.shape[0])

    def split(self, U, X, priors):
        self.calls.append('split')
        if len(self.splits) == 0 or not self.splits.pop(0):
            return U, X, priors, False
        U = np.concatenate([U, U[..., :1]], axis=-1)
        X = csc_matrix(np.hstack([X.toarray(), np.zeros((X.shape[0], 1))]))
        X[X.shape[1] - 1, X.shape[1] - 1] = 1
        return U, X, np.full(U.shape[-1], 1 / X.shape[0]), True


def initial_train(n=100, M=2):
    return csc_matrix((np.ones(M), (np.arange(M), np.arange(M))), shape=(n, M))


def test_alternate_then_settle():
    V = np.zeros((100, 1))
    engine = ScriptedEngine([True, True, False])
    U, X, priors, history = fit_model(V, initial_train(), engine, DEFAULT_SETTINGS)

    # Two splits, one round without a split, then two settling rounds.
    assert history == [3, 4, 4, 4, 4]
    assert engine.calls.count('split') == 3
    assert engine.calls.count('merge') == 4
    assert engine.calls.count('spikes') == 5
    assert U.shape[-1] == X.shape[1] == priors.size == 4
    # Waveforms are estimated before merging and pruning in every round.
    assert engine.calls[:5] == ['waveforms', 'merge', 'prune', 'spikes', 'split']
    assert engine.calls[-3:] == ['waveforms', 'prune', 'spikes']


def test_max_rounds(caplog):
    V = np.zeros((100, 1))
    engine = ScriptedEngine([True] * 100)
    settings = {**DEFAULT_SETTINGS, 'max_rounds': 4}
    with caplog.at_level(logging.WARNING, logger='bpsort'):
        U, X, priors, history = fit_model(V, initial_train(), engine, settings)
    assert history == [3, 4, 5, 5, 5]
    assert 'No stable model' in caplog.text


def test_empty_templates_dropped():
    V = np.zeros((100, 1))
    X0 = initial_train(M=3)
    X0 = csc_matrix(X0.toarray() * [1, 0, 1])
    engine = ScriptedEngine([False])
    U, X, priors, history = fit_model(V, X0, engine, DEFAULT_SETTINGS)
    assert history == [2, 2, 2]
    assert X.shape[1] == 2
