"""
Configuration management and loading.

Handles application settings for the recommendation gateway, the cache,
plan thresholds, storage and the Toss and Stripe webhook endpoints.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from subscription_lifecycle.storage.models import PlanType

DEFAULT_FALLBACK_PRICE = 199000
DEFAULT_FALLBACK_REASON = "Recommendation unavailable, default price applied"
DEFAULT_STRIPE_PRICE_PLANS = {
    "price_basic_monthly": PlanType.BASIC,
    "price_basic_yearly": PlanType.BASIC,
    "price_pro_monthly": PlanType.PRO,
    "price_pro_yearly": PlanType.PRO,
    "price_enterprise_monthly": PlanType.ENTERPRISE,
    "price_enterprise_yearly": PlanType.ENTERPRISE,
}


@dataclass(frozen=True)
class RecommendationConfig:
    """Settings for the external price recommender."""
    model: str = "gpt-3.5-turbo-instruct"
    max_tokens: int = 300
    timeout_seconds: float = 10.0
    prompt_key_length: int = 200
    fallback_price: int = DEFAULT_FALLBACK_PRICE
    fallback_reason: str = DEFAULT_FALLBACK_REASON
    max_workers: int = 4

    def __post_init__(self):
        """Validate recommendation values."""
        if not self.model or not self.model.strip():
            raise ValueError("recommendation.model cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("recommendation.max_tokens must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("recommendation.timeout_seconds must be > 0")
        if self.prompt_key_length <= 0:
            raise ValueError("recommendation.prompt_key_length must be > 0")
        if self.fallback_price <= 0:
            raise ValueError("recommendation.fallback_price must be > 0")
        if self.max_workers <= 0:
            raise ValueError("recommendation.max_workers must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Bounds for the recommendation cache. None means unbounded."""
    max_entries: Optional[int] = 1024
    ttl_seconds: Optional[float] = None

    def __post_init__(self):
        if self.max_entries is not None and self.max_entries <= 0:
            raise ValueError("cache.max_entries must be > 0")
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError("cache.ttl_seconds must be > 0")


@dataclass(frozen=True)
class PlanThresholds:
    """Minimum payment amounts (minor currency units) for each paid tier."""
    basic: int = 38000
    pro: int = 129000
    enterprise: int = 390000

    def __post_init__(self):
        """Validate thresholds are positive and strictly ascending."""
        if self.basic <= 0:
            raise ValueError("plans.basic must be > 0")
        if not self.basic < self.pro < self.enterprise:
            raise ValueError("plan thresholds must ascend: basic < pro < enterprise")


@dataclass(frozen=True)
class StorageConfig:
    """Storage backend settings."""
    database_path: str = "subscription_lifecycle.db"


@dataclass(frozen=True)
class WebhookConfig:
    """Webhook ingress settings."""
    payment_method: str = "toss"
    signing_secret: Optional[str] = None


@dataclass(frozen=True)
class StripeConfig:
    """Stripe webhook settings.

    ``price_plans`` maps Stripe price ids to the plan they subscribe to;
    unknown price ids buy ``default_plan``.
    """
    signing_secret: Optional[str] = None
    tolerance_seconds: int = 300
    price_plans: Dict[str, PlanType] = field(default_factory=lambda: dict(DEFAULT_STRIPE_PRICE_PLANS))
    default_plan: PlanType = PlanType.BASIC

    def __post_init__(self):
        if self.tolerance_seconds <= 0:
            raise ValueError("stripe.tolerance_seconds must be > 0")
        if self.default_plan == PlanType.FREE:
            raise ValueError("stripe.default_plan must be a paid plan")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    recommendation: RecommendationConfig = field(default_factory=RecommendationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    plans: PlanThresholds = field(default_factory=PlanThresholds)
    storage: StorageConfig = field(default_factory=StorageConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    stripe: StripeConfig = field(default_factory=StripeConfig)
    log_level: str = "INFO"


_SECTION_KEYS = {
    'recommendation': {
        'model', 'max_tokens', 'timeout_seconds', 'prompt_key_length',
        'fallback_price', 'fallback_reason', 'max_workers'
    },
    'cache': {'max_entries', 'ttl_seconds'},
    'plans': {'basic', 'pro', 'enterprise'},
    'storage': {'database_path'},
    'webhook': {'payment_method', 'signing_secret'},
    'stripe': {'signing_secret', 'tolerance_seconds', 'price_plans', 'default_plan'},
}

_LOG_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    and invalid values are rejected so a typo never silently changes the
    fallback price or plan thresholds.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = set(_SECTION_KEYS) | {'log_level'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    log_level = raw_config.get('log_level', 'INFO')
    if not isinstance(log_level, str) or log_level.upper() not in _LOG_LEVELS:
        raise ValueError(f"'log_level' must be one of: {sorted(_LOG_LEVELS)}")

    return AppConfig(
        recommendation=_parse_recommendation(sections['recommendation']),
        cache=CacheConfig(
            max_entries=_optional_int(sections['cache'], 'max_entries', 1024, 'cache'),
            ttl_seconds=_optional_number(sections['cache'], 'ttl_seconds', None, 'cache')
        ),
        plans=PlanThresholds(
            basic=_int(sections['plans'], 'basic', 38000, 'plans'),
            pro=_int(sections['plans'], 'pro', 129000, 'plans'),
            enterprise=_int(sections['plans'], 'enterprise', 390000, 'plans')
        ),
        storage=StorageConfig(
            database_path=_string(sections['storage'], 'database_path',
                                  "subscription_lifecycle.db", 'storage')
        ),
        webhook=WebhookConfig(
            payment_method=_string(sections['webhook'], 'payment_method', "toss", 'webhook'),
            signing_secret=_optional_string(sections['webhook'], 'signing_secret', 'webhook')
        ),
        stripe=_parse_stripe(sections['stripe']),
        log_level=log_level.upper()
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated configuration section, empty when absent."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_recommendation(data: Dict[str, Any]) -> RecommendationConfig:
    defaults = RecommendationConfig()
    return RecommendationConfig(
        model=_string(data, 'model', defaults.model, 'recommendation'),
        max_tokens=_int(data, 'max_tokens', defaults.max_tokens, 'recommendation'),
        timeout_seconds=_number(data, 'timeout_seconds', defaults.timeout_seconds, 'recommendation'),
        prompt_key_length=_int(data, 'prompt_key_length', defaults.prompt_key_length, 'recommendation'),
        fallback_price=_int(data, 'fallback_price', defaults.fallback_price, 'recommendation'),
        fallback_reason=_string(data, 'fallback_reason', defaults.fallback_reason, 'recommendation'),
        max_workers=_int(data, 'max_workers', defaults.max_workers, 'recommendation')
    )


def _parse_stripe(data: Dict[str, Any]) -> StripeConfig:
    defaults = StripeConfig()
    price_plans = data.get('price_plans', defaults.price_plans)
    if not isinstance(price_plans, dict):
        raise ValueError("'price_plans' in stripe must be a dictionary")
    default_plan = data.get('default_plan', defaults.default_plan)
    return StripeConfig(
        signing_secret=_optional_string(data, 'signing_secret', 'stripe'),
        tolerance_seconds=_int(data, 'tolerance_seconds', defaults.tolerance_seconds, 'stripe'),
        price_plans={str(price_id): _plan(plan, 'price_plans') for price_id, plan in price_plans.items()},
        default_plan=_plan(default_plan, 'default_plan')
    )


def _plan(value: Any, key: str) -> PlanType:
    try:
        return PlanType.parse(value)
    except ValueError as e:
        raise ValueError(f"'{key}' in stripe: {e}")


def _string(data: Dict[str, Any], key: str, default: str, path: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _optional_string(data: Dict[str, Any], key: str, path: str) -> Optional[str]:
    if data.get(key) is None:
        return None
    return _string(data, key, "", path)


def _int(data: Dict[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict[str, Any], key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _optional_int(data: Dict[str, Any], key: str, default: Optional[int], path: str) -> Optional[int]:
    if data.get(key, default) is None:
        return None
    return _int(data, key, default, path)


def _optional_number(data: Dict[str, Any], key: str, default: Optional[float],
                     path: str) -> Optional[float]:
    if data.get(key, default) is None:
        return None
    return _number(data, key, default, path)
