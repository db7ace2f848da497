"""Configuration management for the conversation engine."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from mdchat.chat.models import ChatOptions

if TYPE_CHECKING:
    from mdchat.tools.registry import ToolPolicy

logger = logging.getLogger(__name__)

RUNTIME_CONFIG_ENV = "MDCHAT_RUNTIME_CONFIG"


class EndpointConfig(BaseModel):
    """Resolved chat-completions endpoint: where to send requests and with what key."""

    name: str
    base_url: str
    api_key: str
    default_model: str

    @property
    def provider(self) -> str:
        """Detect provider from base URL for provider-specific handling."""
        url = self.base_url
        if "openai.com" in url:
            return "openai"
        if "openrouter.ai" in url:
            return "openrouter"
        if "anthropic.com" in url:
            return "anthropic"
        if "mistral.ai" in url:
            return "mistral"
        if "generativelanguage.googleapis.com" in url:
            return "gemini"
        if "x.ai" in url:
            return "xai"
        return "unknown"


class Configuration:
    """YAML-backed configuration with an optional runtime override file."""

    def __init__(
        self,
        config_path: str | None = None,
        runtime_config_path: str | None = None,
    ) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self._config_path = config_path or os.path.join(os.path.dirname(__file__), "config.yaml")
        self._default_config = self._load_yaml_config(self._config_path)
        self._runtime_config_path = runtime_config_path or os.getenv(RUNTIME_CONFIG_ENV)
        self._runtime_config_mtime: float | None = None
        self._current_config: dict[str, Any] = {}

        self._config_change_callbacks: list[Callable[[dict[str, Any]], None]] = []

        self._reload_config()

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a dictionary")
            return cast(dict[str, Any], config)

    def _load_runtime_config(self) -> dict[str, Any]:
        """Load the runtime override file; unreadable or invalid files are ignored."""
        if not self._runtime_config_path or not os.path.exists(self._runtime_config_path):
            return {}
        try:
            with open(self._runtime_config_path) as file:
                config = yaml.safe_load(file)
        except (yaml.YAMLError, OSError) as e:
            logger.error("Could not read runtime configuration %s: %s", self._runtime_config_path, e)
            return {}
        if not isinstance(config, dict):
            logger.warning("Runtime configuration is not a mapping, ignoring it")
            return {}
        return {k: v for k, v in config.items() if not k.startswith("_runtime_config")}

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(cast(dict[str, Any], result[key]), cast(dict[str, Any], value))
            else:
                result[key] = value

        return result

    def _reload_config(self) -> bool:
        """Reload configuration if the runtime file has been modified.

        Returns:
            True if config was actually reloaded, False if no changes.
        """
        current_mtime = None
        if self._runtime_config_path and os.path.exists(self._runtime_config_path):
            current_mtime = os.path.getmtime(self._runtime_config_path)

        if current_mtime == self._runtime_config_mtime and self._current_config:
            return False

        old_config = self._current_config.copy()
        self._runtime_config_mtime = current_mtime
        self._current_config = self._deep_merge(self._default_config, self._load_runtime_config())

        # Notify observers if config actually changed (not just first load)
        if old_config and self._current_config != old_config:
            self._notify_config_change()

        return True

    def _get_current_config(self) -> dict[str, Any]:
        """Get current configuration (cached, no file system access)."""
        return self._current_config

    def _notify_config_change(self) -> None:
        """Notify all registered observers of configuration changes."""
        for callback in self._config_change_callbacks:
            try:
                callback(self._current_config.copy())
            except Exception as e:
                logger.error("Error in config change callback: %s", e)

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Subscribe to configuration change events.

        Args:
            callback: Function to call when config changes. Receives new
                config as argument.
        """
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unsubscribe_from_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Unsubscribe from configuration change events."""
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    def reload_runtime_config(self) -> bool:
        """Manually reload runtime configuration.

        Returns:
            True if configuration was reloaded, False if no changes detected.
        """
        return self._reload_config()

    def save_runtime_config(self, config: dict[str, Any]) -> None:
        """Save configuration to the runtime config file and reload it.

        Raises:
            ValueError: If no runtime config path is configured.
        """
        if not self._runtime_config_path:
            raise ValueError(f"No runtime configuration path set (use {RUNTIME_CONFIG_ENV})")

        runtime_config = config.copy()
        runtime_config["_runtime_config"] = {"last_modified": time.time()}

        with open(self._runtime_config_path, "w") as file:
            yaml.safe_dump(runtime_config, file, default_flow_style=False, indent=2)

        # mtime resolution can hide a write made within the same tick
        self._runtime_config_mtime = None
        self._reload_config()

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._get_current_config()

    def get_provider_config(self) -> dict[str, Any]:
        """Get the active LLM provider section.

        Raises:
            ValueError: If the active provider is not configured.
        """
        llm_config = self._get_current_config().get("llm", {})
        active_provider = llm_config.get("active", "openai")
        providers = llm_config.get("providers", {})

        if active_provider not in providers:
            raise ValueError(f"Active provider '{active_provider}' not found in providers config")

        return providers[active_provider]

    def get_endpoint(self) -> EndpointConfig:
        """Resolve the active endpoint, including its API key.

        Raises:
            ValueError: If the provider or its API key is missing.
        """
        provider = self.get_provider_config()
        api_key = provider.get("api_key")
        env_key = provider.get("api_key_env")
        if not api_key and env_key:
            api_key = os.getenv(env_key)
        if not api_key:
            raise ValueError(
                f"API key '{env_key}' not found in environment variables "
                f"for provider '{provider.get('name', 'unknown')}'"
            )

        return EndpointConfig(
            name=provider.get("name", "unknown"),
            base_url=provider["base_url"].rstrip("/"),
            api_key=api_key,
            default_model=provider.get("model", ""),
        )

    def get_chat_service_config(self) -> dict[str, Any]:
        """Get chat service configuration from YAML."""
        return self._get_current_config().get("chat", {}).get("service", {})

    def get_system_prompt(self) -> str:
        return self.get_chat_service_config().get("system_prompt", "")

    def get_max_tool_hops(self) -> int:
        """Get the maximum number of tool hops allowed.

        Returns:
            Maximum number of tool hops (default: 8).
        """
        max_hops = self.get_chat_service_config().get("max_tool_hops", 8)

        # bool is an int subclass
        if isinstance(max_hops, bool) or not isinstance(max_hops, int) or max_hops < 1:
            raise ValueError("max_tool_hops must be a positive integer")

        return max_hops

    def get_tool_policy(self) -> ToolPolicy:
        """Build the classification policy for the tool registry."""
        from mdchat.tools.registry import ToolPolicy

        tools_config = self._get_current_config().get("tools", {})
        return ToolPolicy.from_mapping(tools_config.get("enabled_classifications", {}))

    def get_disabled_tools(self) -> list[str]:
        return list(self._get_current_config().get("tools", {}).get("disabled", []) or [])

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._get_current_config().get("logging", {})

    def get_connection_pool_config(self) -> dict[str, Any]:
        """Get HTTP connection pool settings with defaults filled in."""
        pool = self._get_current_config().get("connection_pool", {})
        config = {
            "max_connections": pool.get("max_connections", 10),
            "max_keepalive_connections": pool.get("max_keepalive_connections", 5),
            "keepalive_expiry_seconds": pool.get("keepalive_expiry_seconds", 30.0),
            "request_timeout_seconds": pool.get("request_timeout_seconds", 120.0),
        }
        if config["request_timeout_seconds"] <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return config

    def default_options(self, tool_names: list[str] | None = None) -> ChatOptions:
        """Options a fresh conversation starts with."""
        service = self.get_chat_service_config()
        values = {
            "model": self.get_provider_config().get("model", ""),
            "max_completion_tokens": service.get("default_max_tokens"),
            "stream": service.get("stream", True),
            "tools": tool_names,
        }
        # Unconfigured values stay unset so they are not written back as null
        return ChatOptions(**{k: v for k, v in values.items() if v is not None})
