"""
Configuration for the Reserve Oracle

Supports:
- YAML/JSON file loading
- Environment variable overrides (.env honoured)
- Versioned configuration, validated at load time
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from pathlib import Path
import os
import json
import logging

import yaml
from dotenv import load_dotenv

from .access import Capability
from .models.feed import SourceKind

logger = logging.getLogger(__name__)

# Load .env file if present
load_dotenv()

CONFIG_VERSION = 1


# ============ Sub-Configurations ============

@dataclass
class VenueConfig:
    """Exchange venue used to publish upstream price rounds"""
    name: str
    enabled: bool = True
    weight: float = 1.0
    cache_ttl: float = 1.0

    def validate(self) -> List[str]:
        errors = []
        if not self.name:
            errors.append("venue name is required")
        if self.weight <= 0:
            errors.append(f"venue {self.name}: weight must be positive")
        return errors


@dataclass
class FeedDefinition:
    """One price feed registered with the aggregator at startup"""
    asset: str
    symbol: str
    primary_source: str
    source_kind: str = SourceKind.DIRECT_FEED.value
    heartbeat: int = 3600
    deviation_threshold_bps: int = 500
    fallback_source: str = ""
    fallback_kind: str = ""

    def validate(self) -> List[str]:
        errors = []
        kinds = {k.value for k in SourceKind}
        if not self.asset:
            errors.append("feed asset is required")
        if not self.primary_source:
            errors.append(f"feed {self.asset}: primary_source is required")
        if self.source_kind not in kinds:
            errors.append(f"feed {self.asset}: unknown source_kind {self.source_kind}")
        if self.fallback_source and self.fallback_kind not in kinds:
            errors.append(f"feed {self.asset}: fallback_kind required with fallback_source")
        if self.heartbeat <= 0:
            errors.append(f"feed {self.asset}: heartbeat must be positive")
        if self.deviation_threshold_bps <= 0:
            errors.append(f"feed {self.asset}: deviation_threshold_bps must be positive")
        return errors


def get_default_feeds() -> List[FeedDefinition]:
    """Gold-backed reserve pricing with a manual fallback"""
    return [
        FeedDefinition(
            asset="paxg",
            symbol="PAXG/USD",
            primary_source="PAXG/USD",
            heartbeat=3600,
            deviation_threshold_bps=500,
            fallback_source="PAXG/USD",
            fallback_kind=SourceKind.MANUAL_SUBMISSION.value,
        ),
        FeedDefinition(
            asset="usdc",
            symbol="USDC/USD",
            primary_source="USDC/USD",
            heartbeat=86400,
            deviation_threshold_bps=100,
            fallback_source="USDC/USD",
            fallback_kind=SourceKind.MANUAL_SUBMISSION.value,
        ),
    ]


def get_default_venues() -> List[VenueConfig]:
    return [
        VenueConfig(name="coinbase", weight=1.0),
        VenueConfig(name="kraken", weight=1.0),
    ]


@dataclass
class PriceFeedConfig:
    """Aggregator and source adapter configuration"""
    hard_ceiling_bps: int = 2000
    max_round_age: int = 3600
    max_clock_skew: int = 60
    manual_expiry: int = 3600

    # Venue round publishing
    round_decimals: int = 8
    trim_pct: float = 0.1
    min_venues: int = 1
    max_spread_bps: float = 500.0

    feeds: List[FeedDefinition] = field(default_factory=get_default_feeds)

    def validate(self) -> List[str]:
        errors = []
        if not 0 < self.hard_ceiling_bps <= 1_000_000:
            errors.append("hard_ceiling_bps must be in (0, 1000000]")
        if self.max_round_age <= 0:
            errors.append("max_round_age must be positive")
        if self.manual_expiry <= 0:
            errors.append("manual_expiry must be positive")
        if not 0 <= self.trim_pct < 0.5:
            errors.append("trim_pct must be in [0, 0.5)")
        if self.min_venues < 1:
            errors.append("min_venues must be at least 1")

        seen = set()
        for feed in self.feeds:
            errors.extend(feed.validate())
            if feed.deviation_threshold_bps > self.hard_ceiling_bps:
                errors.append(f"feed {feed.asset}: threshold exceeds hard_ceiling_bps")
            if feed.asset in seen:
                errors.append(f"duplicate feed asset: {feed.asset}")
            seen.add(feed.asset)
        return errors


@dataclass
class AttestorConfig:
    """Trusted attestor and its bound Ed25519 public key (hex)"""
    name: str
    public_key: str

    def validate(self) -> List[str]:
        errors = []
        if not self.name:
            errors.append("attestor name is required")
        key = self.public_key[2:] if self.public_key.startswith("0x") else self.public_key
        if len(key) != 64:
            errors.append(f"attestor {self.name}: public_key must be 64 hex chars")
        return errors


@dataclass
class AttestationConfig:
    """Audit report quorum configuration"""
    quorum: int = 2
    max_clock_skew: int = 300
    attestors: List[AttestorConfig] = field(default_factory=list)

    def validate(self) -> List[str]:
        errors = []
        if self.quorum <= 0:
            errors.append("quorum must be at least 1")
        for attestor in self.attestors:
            errors.extend(attestor.validate())
        names = [a.name for a in self.attestors]
        keys = [a.public_key.lower() for a in self.attestors]
        if len(set(names)) != len(names) or len(set(keys)) != len(keys):
            errors.append("attestor names and keys must be unique")
        return errors


@dataclass
class ReconciliationConfig:
    """Off-process reconciliation configuration"""
    attestation_endpoint: str = field(
        default_factory=lambda: os.getenv("ATTESTATION_ENDPOINT", "")
    )
    reserve_url: str = ""
    api_token: str = field(default_factory=lambda: os.getenv("ATTESTATION_API_TOKEN", ""))

    # Auditor id -> Ed25519 public key (hex)
    trusted_keys: Dict[str, str] = field(default_factory=dict)

    tolerance: int = 10**15
    cache_ttl: float = 3600.0
    refresh_interval: float = 3600.0
    reserve_poll_interval: float = 60.0
    required_ratio: int = 1_000_000  # 6 decimals: 1.0
    require_root_match: bool = True

    def validate(self) -> List[str]:
        errors = []
        if self.tolerance < 0:
            errors.append("tolerance must be non-negative")
        if self.cache_ttl <= 0:
            errors.append("cache_ttl must be positive")
        if self.refresh_interval <= 0:
            errors.append("refresh_interval must be positive")
        if self.required_ratio <= 0:
            errors.append("required_ratio must be positive")
        return errors


# ============ Main Configuration ============

@dataclass
class ReserveOracleConfig:
    """Main reserve oracle configuration"""
    config_version: int = CONFIG_VERSION

    price_feeds: PriceFeedConfig = field(default_factory=PriceFeedConfig)
    venues: List[VenueConfig] = field(default_factory=get_default_venues)
    attestation: AttestationConfig = field(default_factory=AttestationConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)

    # Caller identity -> capability names
    operators: Dict[str, List[str]] = field(default_factory=lambda: {
        "operator": [Capability.ORACLE_ADMIN.value, Capability.MANUAL_ORACLE.value],
        "governance": [Capability.ADMIN.value],
    })

    update_interval_seconds: int = 30

    # Logging
    log_level: str = "INFO"
    log_file: str = ""

    def get_venue(self, name: str) -> Optional[VenueConfig]:
        for venue in self.venues:
            if venue.name == name:
                return venue
        return None

    def get_enabled_venues(self) -> List[VenueConfig]:
        return [v for v in self.venues if v.enabled]

    def capability_grants(self) -> Dict[str, List[Capability]]:
        return {
            caller: [Capability(name) for name in names]
            for caller, names in self.operators.items()
        }

    def validate(self) -> List[str]:
        """Validate entire configuration"""
        errors = []

        if self.config_version != CONFIG_VERSION:
            errors.append(
                f"unsupported config_version {self.config_version} (expected {CONFIG_VERSION})"
            )

        errors.extend(self.price_feeds.validate())
        errors.extend(self.attestation.validate())
        errors.extend(self.reconciliation.validate())

        for venue in self.venues:
            errors.extend(venue.validate())

        capabilities = {c.value for c in Capability}
        for caller, names in self.operators.items():
            for name in names:
                if name not in capabilities:
                    errors.append(f"operator {caller}: unknown capability {name}")

        if self.update_interval_seconds <= 0:
            errors.append("update_interval_seconds must be positive")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============ Configuration Loading ============

# Env var -> (path, converter)
ENV_MAPPINGS: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "ATTESTATION_ENDPOINT": (("reconciliation", "attestation_endpoint"), str),
    "ATTESTATION_API_TOKEN": (("reconciliation", "api_token"), str),
    "RESERVE_URL": (("reconciliation", "reserve_url"), str),
    "REQUIRED_RATIO": (("reconciliation", "required_ratio"), int),
    "HARD_CEILING_BPS": (("price_feeds", "hard_ceiling_bps"), int),
    "ATTESTATION_QUORUM": (("attestation", "quorum"), int),
    "UPDATE_INTERVAL_SECONDS": (("update_interval_seconds",), int),
    "LOG_LEVEL": (("log_level",), str),
}


def _apply_env_overrides(config_dict: Dict) -> Dict:
    """Apply environment variable overrides to config"""
    for env_var, (path, convert) in ENV_MAPPINGS.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        try:
            converted = convert(value)
        except ValueError:
            raise ValueError(f"Invalid value for {env_var}: {value!r}")

        current = config_dict
        for key in path[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[path[-1]] = converted

    return config_dict


def _dict_to_config(d: Dict) -> ReserveOracleConfig:
    """Convert dictionary to ReserveOracleConfig"""
    pf = dict(d.get("price_feeds", {}))
    feeds = pf.pop("feeds", None)
    price_feeds = PriceFeedConfig(**pf)
    if feeds is not None:
        price_feeds.feeds = [FeedDefinition(**f) if isinstance(f, dict) else f for f in feeds]

    att = dict(d.get("attestation", {}))
    attestors = att.pop("attestors", [])
    attestation = AttestationConfig(**att)
    attestation.attestors = [AttestorConfig(**a) if isinstance(a, dict) else a for a in attestors]

    reconciliation = ReconciliationConfig(**d.get("reconciliation", {}))

    venues = [
        VenueConfig(**v) if isinstance(v, dict) else v
        for v in d.get("venues", get_default_venues())
    ]

    config = ReserveOracleConfig(
        config_version=d.get("config_version", CONFIG_VERSION),
        price_feeds=price_feeds,
        venues=venues,
        attestation=attestation,
        reconciliation=reconciliation,
        update_interval_seconds=d.get("update_interval_seconds", 30),
        log_level=d.get("log_level", "INFO"),
        log_file=d.get("log_file", ""),
    )
    if "operators" in d:
        config.operators = {k: list(v) for k, v in d["operators"].items()}
    return config


SEARCH_PATHS = (
    Path("reserve_oracle.yaml"),
    Path("reserve_oracle.json"),
    Path("config/reserve_oracle.yaml"),
)


def _find_config_file(config_path: Optional[Union[str, Path]]) -> Optional[Path]:
    """Explicit path, then RESERVE_ORACLE_CONFIG_PATH, then the search paths"""
    explicit = config_path or os.getenv("RESERVE_ORACLE_CONFIG_PATH")
    if explicit:
        return Path(explicit)
    return next((p for p in SEARCH_PATHS if p.exists()), None)


def _read_config_file(path: Path) -> Dict[str, Any]:
    readers = {
        ".yaml": lambda f: yaml.safe_load(f) or {},
        ".yml": lambda f: yaml.safe_load(f) or {},
        ".json": json.load,
    }
    reader = readers.get(path.suffix)
    if reader is None:
        raise ValueError(f"Unsupported config file format: {path.suffix}")

    with open(path, 'r') as f:
        data = reader(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


def load_config(config_path: Optional[Union[str, Path]] = None) -> ReserveOracleConfig:
    """
    Load and validate configuration.

    Values are layered: defaults, then the config file (YAML/JSON), then
    environment variables. Without an explicit path the file is taken from
    RESERVE_ORACLE_CONFIG_PATH or the first of reserve_oracle.yaml,
    reserve_oracle.json and config/reserve_oracle.yaml that exists. A named
    file that does not exist is logged and skipped.

    Raises:
        ValueError: unsupported file format, bad env value or failed validation
    """
    config_dict: Dict[str, Any] = {}

    path = _find_config_file(config_path)
    if path is not None and path.exists():
        logger.info(f"Loading config from {path}")
        config_dict = _read_config_file(path)
    elif path is not None:
        logger.warning(f"Config file not found: {path}, using defaults")

    config = _dict_to_config(_apply_env_overrides(config_dict))

    errors = config.validate()
    for error in errors:
        logger.error(f"Config validation error: {error}")
    if errors:
        raise ValueError(f"Invalid configuration: {len(errors)} error(s), first: {errors[0]}")

    return config


def _write_config_file(config_dict: Dict[str, Any], path: Path, format: str):
    if format not in ("yaml", "json"):
        raise ValueError(f"Unsupported format: {format}")
    with open(path, 'w') as f:
        if format == "yaml":
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
        else:
            json.dump(config_dict, f, indent=2)


def save_config(config: ReserveOracleConfig, path: Union[str, Path], format: str = "yaml") -> None:
    """Write `config` as YAML or JSON; the attestation API token is never written"""
    config_dict = config.to_dict()
    config_dict["reconciliation"].pop("api_token", None)

    _write_config_file(config_dict, Path(path), format)
    logger.info(f"Config v{config.config_version} saved to {path}")


def generate_default_config(path: Union[str, Path], format: str = "yaml") -> None:
    save_config(ReserveOracleConfig(), path, format)
