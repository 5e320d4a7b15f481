"""
Seed handling for the randomized pipeline stages.

Clustering, t-SNE and marker downsampling all take an optional seed. A caller
that passes ``None`` explicitly gives up reproducibility: a fresh seed is drawn
from OS entropy and reported back so the run can still be replayed.
"""

from typing import Optional, Tuple

import numpy as np

from cellcluster.core.exceptions import DataError
from cellcluster.utils.logger import get_logger

logger = get_logger(__name__)

# Largest seed accepted by both leidenalg and scikit-learn
MAX_SEED = 2**31 - 1


def resolve_seed(seed: Optional[int], stage: str) -> Tuple[int, bool]:
    """
    Turn an optional caller seed into a concrete one.

    Args:
        seed: Caller-supplied seed, or None for a non-deterministic run
        stage: Stage name used in log messages

    Returns:
        Tuple[int, bool]: The seed to use and whether the run is deterministic
    """
    if seed is not None:
        if seed < 0 or seed > MAX_SEED:
            raise DataError(f"seed must be in [0, {MAX_SEED}], got {seed}")
        return int(seed), True

    drawn = int(np.random.SeedSequence().generate_state(1)[0] % MAX_SEED)
    logger.warning(
        f"{stage}: no seed supplied, run is not reproducible (drew seed {drawn})"
    )
    return drawn, False
