"""
Configuration module for Sandpit.
"""
from sandpit.config.logging import setup_logging
from sandpit.config.defaults import GatewayConfig, PoolConfig, QuotaConfig, ServerDefaults

__all__ = ["setup_logging", "GatewayConfig", "PoolConfig", "QuotaConfig", "ServerDefaults"]
