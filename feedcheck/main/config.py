"""Runtime configuration for the validator.

Defaults match the documented behaviour (5s first timeout, 3 attempts, 1s
base retry delay capped at 10s).  ``ValidatorConfig.from_env`` reads
``FEEDCHECK_*`` variables, loading a ``.env`` file first when one exists:

* ``FEEDCHECK_INITIAL_TIMEOUT`` / ``FEEDCHECK_TIMEOUT_STEP`` (seconds)
* ``FEEDCHECK_MAX_ATTEMPTS``
* ``FEEDCHECK_RETRY_BASE_DELAY`` / ``FEEDCHECK_RETRY_MAX_DELAY`` (seconds)
* ``FEEDCHECK_RELAYS`` comma-separated relay templates, in priority order
* ``FEEDCHECK_CONTEXT_ORIGIN`` origin the validator runs on behalf of
* ``FEEDCHECK_SUCCESS_TTL`` / ``FEEDCHECK_FAILURE_TTL`` / ``FEEDCHECK_DISCOVERY_TTL``
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from feedcheck.main.tools.relay import DEFAULT_RELAYS, RelayEndpoint
from feedcheck.main.tools.transport import DEFAULT_USER_AGENT


@dataclass
class ValidatorConfig:
    initial_timeout: float = 5.0
    timeout_step: float = 1.0
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_jitter: float = 0.5
    relays: List[RelayEndpoint] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    relay_failure_threshold: int = 3
    relay_recovery_time: float = 300.0
    # Origin of the page/app we validate for; None disables the cross-origin skip.
    context_origin: Optional[str] = None
    success_ttl: float = 30 * 60.0
    failure_ttl: float = 5 * 60.0
    discovery_ttl: float = 60 * 60.0
    cache_max_entries: int = 10000
    discovery_timeout: float = 10.0
    discovery_concurrency: int = 5
    discovery_high_confidence: float = 0.85
    discovery_probe_via_relay: bool = False
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_env(cls) -> "ValidatorConfig":
        load_dotenv()
        config = cls()
        config.initial_timeout = _float("FEEDCHECK_INITIAL_TIMEOUT", config.initial_timeout)
        config.timeout_step = _float("FEEDCHECK_TIMEOUT_STEP", config.timeout_step)
        config.max_attempts = int(os.getenv("FEEDCHECK_MAX_ATTEMPTS", config.max_attempts))
        config.retry_base_delay = _float("FEEDCHECK_RETRY_BASE_DELAY", config.retry_base_delay)
        config.retry_max_delay = _float("FEEDCHECK_RETRY_MAX_DELAY", config.retry_max_delay)
        config.success_ttl = _float("FEEDCHECK_SUCCESS_TTL", config.success_ttl)
        config.failure_ttl = _float("FEEDCHECK_FAILURE_TTL", config.failure_ttl)
        config.discovery_ttl = _float("FEEDCHECK_DISCOVERY_TTL", config.discovery_ttl)
        config.context_origin = os.getenv("FEEDCHECK_CONTEXT_ORIGIN") or None
        relays = os.getenv("FEEDCHECK_RELAYS")
        if relays:
            config.relays = parse_relay_templates(relays)
        if config.max_attempts < 1:
            raise ValueError("FEEDCHECK_MAX_ATTEMPTS must be at least 1")
        return config


def parse_relay_templates(value: str) -> List[RelayEndpoint]:
    """Turn ``"https://a/?url={url},https://b/raw?"`` into relay endpoints."""
    relays = []
    for priority, template in enumerate(t.strip() for t in value.split(",")):
        if not template:
            continue
        name = urlparse(template.replace("{url}", "")).netloc or f"relay-{priority}"
        if any(r.name == name for r in relays):
            name = f"{name}-{priority}"
        relays.append(RelayEndpoint(name=name, template=template, priority=priority))
    return relays


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default
