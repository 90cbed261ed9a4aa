"""
mcpgate validation module.

This module provides configuration loading, schema validation, and the
service directory.
"""

from mcpgate.validation.config import Config, ConfigError, ServiceConfig, TransportKind
from mcpgate.validation.directory import ServiceDirectory

__all__ = ["Config", "ConfigError", "ServiceConfig", "ServiceDirectory", "TransportKind"]
