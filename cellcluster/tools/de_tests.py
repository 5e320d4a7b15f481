"""
Differential expression tests used by the marker finder.

Each test implements the ``DifferentialTest`` interface and is looked up by
its ``DETest`` member. Tests are vectorized over genes: they receive the row
indices of both groups and a cells × genes expression matrix, and return one
statistic and one p-value per gene.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Tuple

import numpy as np
from scipy import stats

from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)


class DETest(str, Enum):
    """Available differential expression tests."""

    WILCOXON = "wilcoxon"
    T_TEST = "t_test"
    BIMOD = "bimod"


class DifferentialTest(ABC):
    """
    Interface of a per-gene two-group test.

    Implementations must return arrays of length ``n_genes``; p-values that
    cannot be computed are reported as NaN and treated as 1 by the caller.
    """

    name: str = ""

    @abstractmethod
    def compute_statistic(
        self, group_a: np.ndarray, group_b: np.ndarray, expression: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Test every gene for a difference between two groups of cells.

        Args:
            group_a: Row indices of the target group
            group_b: Row indices of the comparison group
            expression: Dense cells × genes matrix of log-normalized values

        Returns:
            Tuple[np.ndarray, np.ndarray]: Test statistic and p-value per gene
        """
        pass


class WilcoxonTest(DifferentialTest):
    """Two-sided Wilcoxon rank-sum (Mann-Whitney U) test."""

    name = "wilcoxon"

    def compute_statistic(self, group_a, group_b, expression):
        a = expression[group_a]
        b = expression[group_b]
        with np.errstate(divide="ignore", invalid="ignore"):
            result = stats.mannwhitneyu(a, b, alternative="two-sided", axis=0)
        return np.asarray(result.statistic, dtype=float), np.asarray(
            result.pvalue, dtype=float
        )


class WelchTTest(DifferentialTest):
    """Two-sided Welch t-test (unequal variances)."""

    name = "t_test"

    def compute_statistic(self, group_a, group_b, expression):
        a = expression[group_a]
        b = expression[group_b]
        with np.errstate(divide="ignore", invalid="ignore"):
            result = stats.ttest_ind(a, b, equal_var=False, axis=0)
        statistic = np.asarray(result.statistic, dtype=float)
        p_value = np.asarray(result.pvalue, dtype=float)

        # Both groups constant: the difference is either certain or absent
        diff = a.mean(axis=0) - b.mean(axis=0)
        degenerate = (a.var(axis=0) == 0) & (b.var(axis=0) == 0)
        differs = degenerate & (diff != 0)
        same = degenerate & (diff == 0)
        statistic[differs] = np.sign(diff[differs]) * np.inf
        p_value[differs] = 0.0
        statistic[same] = 0.0
        p_value[same] = 1.0
        return statistic, p_value


class BimodTest(DifferentialTest):
    """
    Likelihood-ratio test for single-cell expression (McDavid et al., 2013).

    Expression is modelled as a mixture of a point mass at zero and a normal
    distribution over the positive values. The likelihoods of the two groups
    fitted separately and jointly are compared with a chi-squared test on
    3 degrees of freedom.
    """

    name = "bimod"

    MIN_FRACTION = 1e-5
    MIN_SD = 1e-8

    def _log_likelihood(self, x: np.ndarray) -> float:
        positive = x[x > 0]
        n_zero = len(x) - len(positive)
        fraction = np.clip(len(positive) / len(x), self.MIN_FRACTION, 1 - self.MIN_FRACTION)
        sd = positive.std(ddof=1) if len(positive) >= 2 else 1.0
        sd = max(sd, self.MIN_SD)
        likelihood = n_zero * np.log(1 - fraction) + len(positive) * np.log(fraction)
        if len(positive):
            likelihood += stats.norm.logpdf(positive, loc=positive.mean(), scale=sd).sum()
        return float(likelihood)

    def compute_statistic(self, group_a, group_b, expression):
        n_genes = expression.shape[1]
        statistic = np.empty(n_genes)
        for gene in range(n_genes):
            a = expression[group_a, gene]
            b = expression[group_b, gene]
            combined = np.concatenate([a, b])
            statistic[gene] = 2 * (
                self._log_likelihood(a)
                + self._log_likelihood(b)
                - self._log_likelihood(combined)
            )
        statistic = np.maximum(statistic, 0.0)
        return statistic, stats.chi2.sf(statistic, df=3)


DE_TESTS: Dict[DETest, DifferentialTest] = {
    DETest.WILCOXON: WilcoxonTest(),
    DETest.T_TEST: WelchTTest(),
    DETest.BIMOD: BimodTest(),
}


def get_test(test: DETest) -> DifferentialTest:
    """Return the implementation registered for ``test``."""
    return DE_TESTS[DETest(test)]
