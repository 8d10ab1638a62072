"""
Default configuration and mapping file validation for the ForumSync cog.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import ConfigurationError
from .models import Mapping

log = logging.getLogger("red.forum_sync.config")

CONFIG_IDENTIFIER = 908039527271104515

MAPPINGS_FILENAME = "mappings.json"

LOG_LEVELS = ("debug", "info", "warning", "error")

# Default global configuration
DEFAULT_GLOBAL_CONFIG = {
    "github_token": None,  # Token used for every mapping without its own
    "webhook_host": "0.0.0.0",
    "webhook_port": 5000,
    "webhook_path": "/webhook",
    "health_check_interval": 60,  # Seconds between health samples
    "forum_category_id": None,  # Category new forum channels are created in by watch
    "archive_debounce": 0.5,  # Seconds to wait before mirroring an archive change
    "echo_ttl": 10.0,  # Seconds a self-caused thread state is expected back
    "log_level": None,  # Level for the red.forum_sync loggers, None keeps Red's
    "retry": {
        "max_retries": 3,
        "initial_delay": 1.0,
        "max_delay": 30.0,
        "backoff_multiplier": 2.0,
    },
    "breaker": {
        "threshold": 5,  # Consecutive failures before opening
        "timeout": 60.0,  # Hard per-call timeout
        "reset_timeout": 300.0,  # Seconds open before a probe is allowed
    },
}


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_config(data: Dict[str, Any]) -> ValidationResult:
    """
    Validate a mappings document and the optional settings next to it.

    Expects ``{"mappings": [...]}``; ``webhook_port`` and ``log_level`` are
    checked when present.
    """
    result = ValidationResult()
    mappings = data.get("mappings")
    if not isinstance(mappings, list):
        result.errors.append("mappings: Mappings array is required")
        return result
    if not mappings:
        result.warnings.append("No repository mappings configured. Use the watch command to add mappings.")

    ids = set()
    channels = set()
    repos = set()
    for index, mapping in enumerate(mappings):
        prefix = f"mappings[{index}]"
        if not isinstance(mapping, dict):
            result.errors.append(f"{prefix}: Mapping must be an object")
            continue

        mapping_id = mapping.get("id")
        if not mapping_id:
            result.errors.append(f"{prefix}.id: Mapping ID is required")
        elif mapping_id in ids:
            result.errors.append(f"{prefix}.id: Duplicate mapping ID: {mapping_id}")
        else:
            ids.add(mapping_id)

        channel_id = mapping.get("channel_id")
        if not channel_id:
            result.errors.append(f"{prefix}.channel_id: Channel ID is required")
        elif not str(channel_id).isdigit():
            result.errors.append(f"{prefix}.channel_id: Channel ID must be numeric")
        elif str(channel_id) in channels:
            result.warnings.append(f"Channel {channel_id} is mapped multiple times")
        else:
            channels.add(str(channel_id))

        repository = mapping.get("repository")
        if not isinstance(repository, dict):
            result.errors.append(f"{prefix}.repository: Repository configuration is required")
        else:
            owner, name = repository.get("owner"), repository.get("name")
            if not owner:
                result.errors.append(f"{prefix}.repository.owner: Repository owner is required")
            if not name:
                result.errors.append(f"{prefix}.repository.name: Repository name is required")
            if owner and name:
                key = f"{owner}/{name}"
                if key in repos:
                    result.warnings.append(f"Repository {key} is mapped multiple times")
                repos.add(key)

        if not isinstance(mapping.get("enabled"), bool):
            result.errors.append(f"{prefix}.enabled: Enabled field must be a boolean")

        secret = mapping.get("webhook_secret")
        if secret is not None and not isinstance(secret, str):
            result.errors.append(f"{prefix}.webhook_secret: Webhook secret must be a string")

    port = data.get("webhook_port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535):
        result.errors.append("webhook_port: Webhook port must be a number between 1 and 65535")

    level = data.get("log_level")
    if level is not None and level not in LOG_LEVELS:
        result.errors.append(f"log_level: Log level must be one of: {', '.join(LOG_LEVELS)}")

    return result


def load_mappings(data: Dict[str, Any]) -> List[Mapping]:
    """Validate ``data`` and build its mappings. Raises ConfigurationError on any error."""
    result = validate_config(data)
    for warning in result.warnings:
        log.warning("Configuration warning: %s", warning)
    if not result.valid:
        for error in result.errors:
            log.error("Configuration error: %s", error)
        raise ConfigurationError(result.errors, result.warnings)
    return [Mapping.from_dict(m) for m in data["mappings"]]
