"""
Feed Service Configuration.

Defaults live in the FeedConfig dataclass; config/serving_config.yaml
(section 'feed') overrides them, and a few environment variables override
the file.

Example:
    >>> from feed_service.config import load_config
    >>> config = load_config()
    >>> config.batch_size
    250
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field, fields
from pathlib import Path
import logging
import os

import yaml

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = "config/serving_config.yaml"
DEFAULT_DATA_DIR = "data/feed"

STRATEGY_ORDER = ('collaborative', 'popular', 'recent', 'random')

CATEGORIES = (
    'LANGUAGE', 'SCIENCE', 'HISTORY', 'MATHEMATICS', 'ART',
    'STARTUP', 'MARKETING', 'PROGRAMMING', 'DESIGN',
    'PRODUCTIVITY', 'PSYCHOLOGY', 'FINANCE', 'HEALTH',
    'PARENTING', 'COOKING', 'TRAVEL', 'HOBBY',
    'TREND', 'FUN', 'OTHER',
)


@dataclass
class FeedConfig:
    """Configuration for batch composition, caching and paging."""

    # Batch composition
    batch_size: int = 250
    strategy_ratios: Dict[str, float] = field(default_factory=lambda: {
        'collaborative': 0.40,
        'popular': 0.30,
        'recent': 0.10,
        'random': 0.20,
    })
    buffer_factor: float = 1.2
    random_refill_rounds: int = 5

    # Scoring
    language_weight_match: float = 2.0
    language_weight_mismatch: float = 0.5
    popular_decay_rate: float = 0.05
    collaborative_decay_rate: float = 0.02
    recent_decay_rate: float = 0.05

    # Collaborative filtering limits
    cf_max_seed_items: int = 100
    cf_max_similar_users_per_item: int = 50
    cf_max_items_per_similar_user: int = 20

    # Candidate sources
    adapter_timeout_seconds: float = 2.0
    recently_viewed_window: int = 100
    random_seed: Optional[int] = None

    # Cache
    batch_ttl_seconds: float = 1800.0  # 30 min
    empty_batch_ttl_seconds: float = 60.0
    prefetch_threshold: float = 0.5
    max_cached_owners: int = 50000
    max_batches_per_owner: int = 20

    # Paging
    default_page_size: int = 20
    max_page_size: int = 100
    default_language: str = 'en'

    # Data
    data_dir: str = DEFAULT_DATA_DIR
    categories: List[str] = field(default_factory=lambda: list(CATEGORIES))

    @property
    def prefetch_at(self) -> int:
        """Consumed count at which the next batch is prefetched."""
        return int(self.batch_size * self.prefetch_threshold)

    def validate(self) -> List[str]:
        """
        Validate the configuration.

        Returns:
            List of error messages (empty when valid)
        """
        errors = []

        if self.batch_size <= 0:
            errors.append(f"batch_size must be positive: {self.batch_size}")

        unknown = set(self.strategy_ratios) - set(STRATEGY_ORDER)
        if unknown:
            errors.append(f"Unknown strategies in strategy_ratios: {sorted(unknown)}")

        if any(r < 0 for r in self.strategy_ratios.values()):
            errors.append("strategy_ratios must be non-negative")

        if self.buffer_factor < 1.0:
            errors.append(f"buffer_factor must be >= 1.0: {self.buffer_factor}")

        if not 0 < self.prefetch_threshold <= 1:
            errors.append(f"prefetch_threshold must be in (0, 1]: {self.prefetch_threshold}")

        if self.max_page_size < 1 or self.default_page_size < 1:
            errors.append("page sizes must be positive")

        if self.max_batches_per_owner < 1:
            errors.append(f"max_batches_per_owner must be positive: {self.max_batches_per_owner}")

        return errors


def _from_mapping(data: Dict[str, Any]) -> FeedConfig:
    """Build FeedConfig from a mapping, ignoring unknown keys."""
    known = {f.name for f in fields(FeedConfig)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown feed config keys: {sorted(unknown)}")

    kwargs = {k: v for k, v in data.items() if k in known}
    if 'strategy_ratios' in kwargs:
        kwargs['strategy_ratios'] = {
            **FeedConfig().strategy_ratios,
            **(kwargs['strategy_ratios'] or {})
        }
    return FeedConfig(**kwargs)


def load_config(config_path: Optional[str] = None) -> FeedConfig:
    """
    Load config from YAML file with environment overrides.

    Args:
        config_path: Path to YAML config (defaults to FEED_CONFIG_PATH env
            var, then config/serving_config.yaml)

    Returns:
        FeedConfig (defaults if the file is missing or malformed)
    """
    path = Path(config_path or os.getenv("FEED_CONFIG_PATH", DEFAULT_CONFIG_PATH))
    config = FeedConfig()

    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            config = _from_mapping(data.get('feed', {}) or {})
            logger.info(f"Loaded feed config from {path}")
        except (yaml.YAMLError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to load config from {path}: {e}, using defaults")
            config = FeedConfig()
    else:
        logger.info(f"Config file not found: {path}, using defaults")

    data_dir = os.getenv("FEED_DATA_DIR")
    if data_dir:
        config.data_dir = data_dir

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Invalid feed config: {error}")
        raise ValueError(f"Invalid feed config: {'; '.join(errors)}")

    return config
