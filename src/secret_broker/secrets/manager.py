"""Backend factory and global broker instance management.

This module provides the factory that builds the configured backend
adapter and manages the process-wide Broker used by the HTTP service.
"""

import asyncio
import logging

from secret_broker.config.settings import BackendKind, get_settings
from secret_broker.secrets.broker import Broker
from secret_broker.secrets.config import BrokerConfig, broker_config_from_settings
from secret_broker.secrets.protocol import SecretBackend

logger = logging.getLogger(__name__)

# Global broker instance
_broker: Broker | None = None
_init_lock = asyncio.Lock()


def create_backend(config: BrokerConfig) -> SecretBackend:
    """Create the backend adapter selected by ``config.backend``.

    The adapter is not connected; ``Broker.start`` does that.
    """
    if config.backend == BackendKind.VAULT:
        from secret_broker.secrets.vault import VaultBackend

        return VaultBackend(config.vault)

    if config.backend == BackendKind.AWS:
        from secret_broker.secrets.aws import AWSSecretsManagerBackend

        return AWSSecretsManagerBackend(config.aws)

    from secret_broker.secrets.environment import EnvironmentBackend

    return EnvironmentBackend(config.environment)


async def initialize_broker(config: BrokerConfig | None = None) -> Broker:
    """Initialize and start the global broker.

    This function should be called once during application startup.

    Args:
        config: Explicit configuration (built from settings if not provided)

    Returns:
        Started Broker instance

    Raises:
        SecretsConnectionError: If connection to the backend fails
        ConfigurationError: If the policy file is missing or invalid

    Example:
        # In the application lifespan
        broker = await initialize_broker()
        ...
        await shutdown_broker()
    """
    global _broker

    async with _init_lock:
        if _broker is not None:
            logger.debug("Broker already initialized")
            return _broker

        if config is None:
            config = broker_config_from_settings(get_settings())

        logger.info(f"Initializing broker with backend: {config.backend.value}")
        broker = Broker.from_config(config)
        await broker.start()
        _broker = broker

        logger.info("Broker initialized successfully")
        return _broker


def get_broker() -> Broker:
    """Get the global broker instance.

    Raises:
        RuntimeError: If the broker is not initialized
    """
    if _broker is None:
        raise RuntimeError("Broker not initialized. Call initialize_broker() first.")
    return _broker


async def shutdown_broker() -> None:
    """Shut down the global broker.

    Should be called during application shutdown to close
    connections and stop background tasks.
    """
    global _broker

    async with _init_lock:
        if _broker is not None:
            try:
                await _broker.close()
                logger.info("Broker shut down")
            except Exception as e:
                logger.warning(f"Error shutting down broker: {e}")
            finally:
                _broker = None
