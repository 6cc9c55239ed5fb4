import numpy as np

from bpsort.mixture import DriftingMixture


def two_clusters(n=400, seed=0, drift=0.0):
    rng = np.random.default_rng(seed)
    t = np.sort(rng.uniform(0, 20000, 2*n))
    labels = rng.permutation(np.repeat([0, 1], n))
    centers = np.array([[0.0, 0.0, 0.0], [15.0, -10.0, 5.0]])
    X = centers[labels] + rng.standard_normal((2*n, 3))
    # Slow drift of both clusters along the first feature.
    X[:, 0] += drift * t / 20000
    return X, t, labels


def agreement(assignment, labels):
    # Fraction of spikes in the cluster matching their true label.
    return max(np.mean(assignment == labels), np.mean(assignment == 1 - labels))


def test_two_clusters():
    X, t, labels = two_clusters()
    model = DriftingMixture(dt_mu=5000).fit(X, t)
    assert model.n_clusters == 2
    assert model.mu.shape == (3, 4, 2)
    assert agreement(model.cluster(), labels) > 0.99


def test_single_cluster_not_split():
    rng = np.random.default_rng(1)
    X = rng.standard_normal((500, 3))
    t = np.sort(rng.uniform(0, 10000, 500))
    model = DriftingMixture(dt_mu=5000).fit(X, t)
    assert model.n_clusters == 1
    assert np.all(model.cluster() == 0)


def test_drifting_means():
    X, t, labels = two_clusters(drift=8.0)
    model = DriftingMixture(dt_mu=5000, drift_rate=0.001).fit(X, t)
    assert model.n_clusters == 2
    assert agreement(model.cluster(), labels) > 0.99
    # Mean trajectories follow the drift.
    change = model.mu[0, -1] - model.mu[0, 0]
    assert np.all(change > 4)


def test_no_spikes():
    model = DriftingMixture().fit(np.zeros((0, 3)), np.zeros(0))
    assert model.n_clusters == 0
    assert model.cluster().size == 0
