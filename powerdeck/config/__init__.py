"""Configuration module for powerdeck."""

from powerdeck.config.schema import AutomationConfig, ClientConfig, Config

__all__ = ["Config", "AutomationConfig", "ClientConfig"]
