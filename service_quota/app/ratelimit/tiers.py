"""
Quota tier table and per-route rate limit options.
"""

import json
from typing import Dict, Optional

from pydantic import BaseModel, ValidationError, model_validator

from shared.errors import ConfigurationError
from shared.logging import get_logger

logger = get_logger("quota.tiers")


class QuotaTier(BaseModel):
    """Named bundle of token-bucket parameters."""

    name: str
    limit: int
    window_ms: int
    burst: int

    @model_validator(mode="after")
    def _check_bounds(self) -> "QuotaTier":
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.burst < self.limit:
            raise ValueError("burst must be greater than or equal to limit")
        return self


class RateLimitOptions(BaseModel):
    """Per-route override; explicit fields win over the tier's defaults."""

    level: Optional[str] = None
    limit: Optional[int] = None
    window_ms: Optional[int] = None
    burst: Optional[int] = None


QUOTA_LEVELS: Dict[str, QuotaTier] = {
    "free": QuotaTier(name="Free Tier", limit=10, window_ms=60_000, burst=15),
    "standard": QuotaTier(name="Standard Tier", limit=100, window_ms=60_000, burst=120),
    "premium": QuotaTier(name="Premium Tier", limit=1000, window_ms=60_000, burst=1200),
    "internal": QuotaTier(name="Internal Services", limit=10000, window_ms=60_000, burst=15000),
}

DEFAULT_LEVEL = "free"
DEFAULT_QUOTA = QUOTA_LEVELS[DEFAULT_LEVEL]


class QuotaTable:
    """Tier lookup plus route option resolution."""

    def __init__(self, levels: Optional[Dict[str, QuotaTier]] = None, default_level: str = DEFAULT_LEVEL):
        self.levels: Dict[str, QuotaTier] = dict(levels if levels is not None else QUOTA_LEVELS)
        if default_level not in self.levels:
            raise ConfigurationError(
                f"Default quota level '{default_level}' is not configured",
                details={"levels": sorted(self.levels)}
            )
        self.default_level = default_level

    @property
    def default(self) -> QuotaTier:
        return self.levels[self.default_level]

    def get(self, level: Optional[str]) -> QuotaTier:
        """Tier for ``level``, falling back to the default tier."""
        if level is None:
            return self.default
        return self.levels.get(level, self.default)

    def resolve(self, options: RateLimitOptions) -> QuotaTier:
        """Merge route options field by field over the selected tier."""
        tier = self.get(options.level)
        try:
            return QuotaTier(
                name=tier.name,
                limit=options.limit if options.limit is not None else tier.limit,
                window_ms=options.window_ms if options.window_ms is not None else tier.window_ms,
                burst=options.burst if options.burst is not None else tier.burst,
            )
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid rate limit options",
                details={"options": options.model_dump(), "error": str(e)}
            ) from e

    def validate_routes(self, routes: Dict[str, RateLimitOptions]) -> Dict[str, QuotaTier]:
        """Resolve every route entry once so bad configuration fails at startup."""
        resolved = {}
        for route_name, options in routes.items():
            if options.level is not None and options.level not in self.levels:
                raise ConfigurationError(
                    f"Route '{route_name}' references unknown quota level '{options.level}'",
                    details={"levels": sorted(self.levels)}
                )
            resolved[route_name] = self.resolve(options)
        return resolved


def load_quota_levels(path: Optional[str] = None) -> Dict[str, QuotaTier]:
    """Built-in tiers, with entries from a JSON file merged on top.

    The file maps a level name to ``{"name", "limit", "window_ms", "burst"}``;
    ``name`` defaults to the existing tier's display name or the level itself.
    """
    levels = dict(QUOTA_LEVELS)
    if not path:
        return levels

    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Unable to read quota tiers file: {path}", details={"error": str(e)}) from e

    if not isinstance(raw, dict):
        raise ConfigurationError("Quota tiers file must contain a JSON object", details={"path": path})

    for level, entry in raw.items():
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Quota tier '{level}' must be an object", details={"path": path})
        fallback_name = levels[level].name if level in levels else level
        try:
            levels[level] = QuotaTier(**{"name": fallback_name, **entry})
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid quota tier '{level}'",
                details={"path": path, "error": str(e)}
            ) from e

    logger.info("Quota tiers loaded", path=path, levels=sorted(levels))
    return levels
