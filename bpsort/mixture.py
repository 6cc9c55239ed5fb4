import logging
import warnings
logger = logging.getLogger(__name__)

import numpy as np
from scipy.linalg import solve_banded
from scipy.special import gammaln, logsumexp
from sklearn.cluster import KMeans


class DriftingMixture:
    """Mixture of multivariate t-distributions with slowly drifting means.

    Time is divided into bins of `dt_mu` milliseconds. Each cluster's mean is
    a trajectory over the bins that follows a Gaussian random walk with
    standard deviation `drift_rate * dt_mu` per bin; covariances and mixing
    proportions are constant. The number of clusters is chosen by greedy
    splitting and merging, maximizing the mean log likelihood per spike minus
    `cluster_cost` per cluster parameter.

    Parameters
    ----------
    df : float
        Degrees of freedom of the t-distributions.
    cluster_cost : float
        Penalty per cluster parameter, in nats per spike.
    drift_rate : float
        Drift of the cluster means per millisecond.
    dt_mu : float
        Width (ms) of the time bins of the mean trajectories.
    tolerance : float
        EM stops when the mean log likelihood per spike changes less.
    cov_ridge : float
        Added to the diagonal of each covariance matrix.
    max_iter : int
        Maximum number of EM iterations per fit.
    max_clusters : int
        Clusters are not split beyond this number.
    random_state : int
        Seed for the k-means initialization of splits.

    Attributes
    ----------
    mu : np.ndarray
        Mean trajectories, shape (n_features, n_bins, n_clusters).
    t : np.ndarray
        Spike times (ms) passed to `fit`.
    assignment : np.ndarray
        Most likely cluster of each spike.

    """

    def __init__(self, df=5, cluster_cost=0.002, drift_rate=400/3600/1000,
                 dt_mu=60000, tolerance=0.005, cov_ridge=1.5, max_iter=200,
                 max_clusters=20, random_state=0):
        self.df = df
        self.cluster_cost = cluster_cost
        self.drift_rate = drift_rate
        self.dt_mu = dt_mu
        self.tolerance = tolerance
        self.cov_ridge = cov_ridge
        self.max_iter = max_iter
        self.max_clusters = max_clusters
        self.random_state = random_state

    @property
    def n_clusters(self):
        return self.weights.size

    def fit(self, X, t):
        """Fit the mixture to features X (n_spikes, n_features) at times t (ms)."""
        X = np.asarray(X, dtype=np.float64)
        self.t = np.asarray(t, dtype=np.float64)
        n, p = X.shape
        self.n_bins = max(1, int(np.ceil((self.t.max() + 1e-9) / self.dt_mu))) if n else 1
        self.bins = np.clip((self.t // self.dt_mu).astype(np.int64), 0, self.n_bins - 1)
        self.min_cluster_size = max(p + 1, 10)

        if n == 0:
            self.weights = np.zeros(0)
            self.means = np.zeros((0, self.n_bins, p))
            self.covs = np.zeros((0, p, p))
            self.assignment = np.zeros(0, dtype=np.int64)
            return self

        R = np.ones((n, 1))
        params, R, score = self._em(X, R)
        for _ in range(4 * self.max_clusters):
            candidate = self._best_split(X, R, score)
            if candidate is None:
                candidate = self._best_merge(X, R, score)
            if candidate is None:
                break
            params, R, score = candidate

        self.weights, self.means, self.covs = params
        self.assignment = R.argmax(axis=1)
        self.score = score
        return self

    @property
    def mu(self):
        return self.means.transpose(2, 1, 0)

    def cluster(self):
        return self.assignment

    def _n_params(self, p):
        return 1 + p + p * (p + 1) / 2

    def _em(self, X, R):
        n, p = X.shape
        covs = None
        ll_old = -np.inf
        U = np.ones_like(R)
        for _ in range(self.max_iter):
            keep = R.sum(axis=0) > 1e-6
            if not keep.all():
                R = R[:, keep]
                U = U[:, keep]
                R /= R.sum(axis=1, keepdims=True)
                covs = None if covs is None else covs[keep]
            params = self._m_step(X, R, U, covs)
            covs = params[2]
            R, U, ll = self._e_step(X, params)
            if abs(ll - ll_old) < self.tolerance:
                break
            ll_old = ll
        M = R.shape[1]
        score = ll - self.cluster_cost * self._n_params(p) * M
        return params, R, score

    def _m_step(self, X, R, U, covs):
        n, p = X.shape
        M = R.shape[1]
        Nk = R.sum(axis=0)
        weights = Nk / n
        means = np.zeros((M, self.n_bins, p))
        new_covs = np.zeros((M, p, p))
        q = (self.drift_rate * self.dt_mu)**2

        for j in range(M):
            w = R[:, j] * U[:, j]
            W = np.bincount(self.bins, weights=w, minlength=self.n_bins)
            S = np.zeros((self.n_bins, p))
            np.add.at(S, self.bins, w[:, None] * X)
            if covs is None:
                m0 = S.sum(0) / max(W.sum(), 1e-12)
                var = np.sum(w[:, None] * (X - m0)**2) / max(Nk[j], 1e-12) / p
            else:
                var = np.trace(covs[j]) / p
            means[j] = self._smooth_means(W, S, max(var, 1e-12), q)

            d = X - means[j][self.bins]
            new_covs[j] = (w[:, None] * d).T @ d / max(Nk[j], 1e-12)
            new_covs[j] += self.cov_ridge * np.eye(p)

        return weights, means, new_covs

    def _smooth_means(self, W, S, var, q):
        """Posterior mean trajectory under a Gaussian random walk prior."""
        n_bins = W.size
        if n_bins == 1 or q == 0:
            m = S.sum(0) / max(W.sum(), 1e-12)
            return np.tile(m, (n_bins, 1))
        # Tridiagonal system (diag(W)/var + L/q) mu = S/var with L the
        # Laplacian of the chain of bins, in banded storage.
        lap = np.full(n_bins, 2.0)
        lap[[0, -1]] = 1
        ab = np.zeros((3, n_bins))
        ab[0, 1:] = -1 / q
        ab[1] = W / var + lap / q + 1e-9
        ab[2, :-1] = -1 / q
        return solve_banded((1, 1), ab, S / var)

    def _e_step(self, X, params):
        weights, means, covs = params
        n, p = X.shape
        M = weights.size
        nu = self.df
        logp = np.zeros((n, M))
        maha = np.zeros((n, M))
        const = gammaln((nu + p) / 2) - gammaln(nu / 2) - p / 2 * np.log(nu * np.pi)
        for j in range(M):
            L = np.linalg.cholesky(covs[j])
            d = X - means[j][self.bins]
            z = np.linalg.solve(L, d.T)
            maha[:, j] = (z**2).sum(0)
            logdet = np.log(np.diag(L)).sum()
            logp[:, j] = (np.log(max(weights[j], 1e-300)) + const - logdet
                          - (nu + p) / 2 * np.log1p(maha[:, j] / nu))
        total = logsumexp(logp, axis=1)
        R = np.exp(logp - total[:, None])
        U = (nu + p) / (nu + maha)
        return R, U, total.mean()

    def _best_split(self, X, R, score):
        M = R.shape[1]
        if M >= self.max_clusters:
            return None
        assignment = R.argmax(axis=1)
        best = None
        for j in range(M):
            members = assignment == j
            if members.sum() < 2 * self.min_cluster_size:
                continue
            with warnings.catch_warnings():
                warnings.simplefilter('ignore')
                labels = KMeans(n_clusters=2, n_init=3, random_state=self.random_state
                                ).fit_predict(X[members])
            if min((labels == 0).sum(), (labels == 1).sum()) < self.min_cluster_size:
                continue
            split = np.zeros(X.shape[0], dtype=bool)
            split[np.nonzero(members)[0][labels == 1]] = True
            R_new = np.concatenate([R, (R[:, j] * split)[:, None]], axis=1)
            R_new[split, j] = 0
            candidate = self._em(X, R_new)
            if candidate[2] > score and (best is None or candidate[2] > best[2]):
                best = candidate
        if best is not None:
            logger.debug(f'Split accepted: {M} -> {best[1].shape[1]} clusters.')
        return best

    def _best_merge(self, X, R, score):
        M = R.shape[1]
        if M < 2:
            return None
        means = self._em_means(X, R)
        dist = ((means[:, None] - means[None, :])**2).sum(-1)
        dist[np.diag_indices(M)] = np.inf
        best = None
        tried = set()
        for j in range(M):
            k = int(np.argmin(dist[j]))
            pair = (min(j, k), max(j, k))
            if pair in tried:
                continue
            tried.add(pair)
            R_new = np.delete(R, pair[1], axis=1)
            R_new[:, pair[0]] += R[:, pair[1]]
            candidate = self._em(X, R_new)
            if candidate[2] > score and (best is None or candidate[2] > best[2]):
                best = candidate
        if best is not None:
            logger.debug(f'Merge accepted: {M} -> {best[1].shape[1]} clusters.')
        return best

    def _em_means(self, X, R):
        """Time-averaged cluster means, shape (n_clusters, n_features)."""
        return (R.T @ X) / np.maximum(R.sum(axis=0)[:, None], 1e-12)
