"""
Application startup and wiring.

This module builds the broker components from a ``BrokerConfig`` and
manages the startup and shutdown sequence.
"""

import logging
from typing import Any, Dict, List, Optional

from ..core.interfaces.lifecycle import IComponent, IStartable, IStoppable
from ..core.interfaces.transport import ISSHTransport
from ..core.services.event_bus import EventBus
from ..infrastructure.clients.ssh.transport import AsyncSSHTransport
from ..infrastructure.config.models import BrokerConfig
from ..infrastructure.persistence.session_store import SessionStore
from ..infrastructure.services.ssh.connection_manager import ConnectionManager
from ..infrastructure.services.ssh.jump_host_manager import JumpHostManager
from ..infrastructure.services.ssh.session_manager import SessionManager
from ..infrastructure.services.ssh.tunnel_manager import TunnelManager

logger = logging.getLogger(__name__)


class ApplicationStartup:
    """
    Builds and runs one broker instance.

    Every instance owns its own event bus, registries and store, so
    several brokers can run side by side in one process.
    """

    def __init__(self, config: BrokerConfig,
                 transport: Optional[ISSHTransport] = None,
                 store: Optional[SessionStore] = None) -> None:
        self._config = config
        self._started_components: List[IComponent] = []

        self.event_bus = EventBus()
        self.transport = transport or AsyncSSHTransport(config.known_hosts_path)
        self.store = store or SessionStore(config.sessions.database_url)

        self.connection_manager = ConnectionManager(
            self.transport,
            allowed_hosts=config.allowed_hosts,
            pool_config=config.pool,
            event_bus=self.event_bus,
        )
        self.tunnel_manager = TunnelManager(self.connection_manager, defaults=config.tunnels)
        self.jump_host_manager = JumpHostManager(self.connection_manager, defaults=config.jump)
        self.session_manager = SessionManager(
            self.connection_manager,
            self.store,
            tunnel_manager=self.tunnel_manager,
            jump_host_manager=self.jump_host_manager,
            config=config.sessions,
        )

        self._startup_order: List[IComponent] = [
            self.event_bus,
            self.connection_manager,
            self.tunnel_manager,
            self.jump_host_manager,
            self.session_manager,
        ]

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def components(self) -> List[IComponent]:
        return list(self._startup_order)

    async def start_application(self) -> None:
        """
        Start all components in dependency order.

        If a component fails to start, the ones already started are
        stopped again and the error is re-raised.
        """
        logger.info(f"Starting {self._config.name} v{self._config.version}")

        for component in self._startup_order:
            try:
                if isinstance(component, IStartable):
                    logger.debug(f"Starting component: {component.name}")
                    await component.start()
                    self._started_components.append(component)
                    logger.info(f"Started component: {component.name}")
            except Exception as e:
                logger.error(f"Failed to start component {component.name}: {e}")
                await self.stop_application()
                raise

        logger.info("Broker startup completed")

    async def stop_application(self) -> None:
        """Stop started components in reverse order."""
        logger.info("Stopping broker components...")

        for component in reversed(self._started_components):
            try:
                if isinstance(component, IStoppable):
                    logger.debug(f"Stopping component: {component.name}")
                    await component.stop()
                    logger.info(f"Stopped component: {component.name}")
            except Exception as e:
                logger.error(f"Error stopping component {component.name}: {e}")

        self._started_components.clear()
        logger.info("Broker shutdown completed")

    async def check_health(self) -> Dict[str, Any]:
        """Aggregate the health of every component."""
        components: Dict[str, Any] = {}
        for component in self._startup_order:
            try:
                components[component.name] = await component.check_health()
            except Exception as e:
                components[component.name] = {'healthy': False, 'status': 'error', 'error': str(e)}

        return {
            'healthy': all(report.get('healthy', False) for report in components.values()),
            'components': components,
        }
