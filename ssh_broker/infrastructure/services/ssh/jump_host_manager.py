"""
Jump host manager: reach targets through chains of bastion hosts.

Chains are built hop by hop: every hop connection is tunnelled through
the previous hop and the target connection through the last one. A hop or
target that is already pooled is reused over whatever route opened it.
"""

import asyncio
import logging
import time
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .connection_manager import ConnectionManager
from .registry import JumpChainRegistry
from ....core.domain.connection import Connection, ConnectionStatus
from ....core.domain.events import Event, EventNames
from ....core.domain.jump import (
    HopRecord, JumpChain, JumpChainConfig, JumpChainStatus, JumpHostConfig, JumpStrategy,
    ValidationResult
)
from ....core.domain.results import OperationResult, utc_now
from ....core.exceptions import BrokerError, JumpChainError, ProbeFailure
from ....core.interfaces.lifecycle import IComponent
from ...config.models import JumpDefaults

logger = logging.getLogger(__name__)


class JumpHostManager(IComponent):
    """Builds, tracks and closes jump host chains."""

    def __init__(self, connection_manager: ConnectionManager,
                 defaults: Optional[JumpDefaults] = None,
                 registry: Optional[JumpChainRegistry] = None):
        self._cm = connection_manager
        self._defaults = defaults or JumpDefaults()
        self._registry = registry or JumpChainRegistry()
        self._event_bus = connection_manager.event_bus
        self._subscription_id: Optional[str] = None
        self._running = False

    @property
    def name(self) -> str:
        return "JumpHostManager"

    @property
    def registry(self) -> JumpChainRegistry:
        return self._registry

    async def start(self) -> None:
        await self._ensure_subscribed()
        self._running = True
        logger.info("Jump host manager started")

    async def stop(self) -> None:
        self._running = False
        await self.cleanup()
        if self._subscription_id:
            await self._event_bus.unsubscribe(self._subscription_id)
            self._subscription_id = None
        logger.info("Jump host manager stopped")

    async def check_health(self) -> Dict[str, Any]:
        chains = self._registry.all()
        return {
            'healthy': True,
            'status': 'running' if self._running else 'stopped',
            'details': {
                'chains_total': len(chains),
                'chains_connected': sum(1 for c in chains if c.status == JumpChainStatus.CONNECTED),
                'chains_failed': sum(1 for c in chains if c.status == JumpChainStatus.FAILED),
                'cached_paths': len(self._registry.path_cache),
            }
        }

    # Validation

    def validate_jump_chain(self, hops: Sequence[Union[JumpHostConfig, Dict[str, Any]]]) -> ValidationResult:
        """
        Check that every hop is usable.

        Each hop needs a host, a username, an auth method and the credential
        that method requires. Long chains and very strict per-hop latency
        limits produce warnings only.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not hops:
            errors.append("At least one jump host is required")

        for index, hop in enumerate(hops, 1):
            if isinstance(hop, dict):
                try:
                    hop = JumpHostConfig.from_dict(hop)
                except (TypeError, ValueError) as e:
                    errors.append(f"Hop {index}: invalid config ({e})")
                    continue

            label = hop.host or f"#{index}"
            errors.extend(f"Hop {index} ({label}): {problem}" for problem in hop.validation_errors())

            if hop.max_latency_ms is not None and hop.max_latency_ms < self._defaults.strict_latency_warning_ms:
                warnings.append(
                    f"Hop {index} ({label}): max_latency_ms {hop.max_latency_ms:g} is very strict "
                    f"and may reject healthy hops")

        if len(hops) > self._defaults.hop_warning_threshold:
            warnings.append(
                f"Chain has {len(hops)} hops; more than {self._defaults.hop_warning_threshold} "
                f"may add significant latency")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    # Connecting

    async def connect_through_jumps(self, config: Union[JumpChainConfig, Dict[str, Any]]) -> OperationResult:
        """
        Connect to ``config.target`` through its jump hosts.

        Returns:
            OperationResult whose data holds ``chain_id``, the target's
            ``connection_id``, ``path_taken``, per-hop details and
            ``total_latency_ms``.
        """
        try:
            if isinstance(config, dict):
                config = JumpChainConfig.from_dict(config)
        except (TypeError, ValueError, BrokerError) as e:
            return OperationResult.fail(f"Invalid jump chain config: {e}")

        validation = self.validate_jump_chain(config.jumps)
        errors = validation.errors + [f"Target: {p}" for p in config.target.validation_errors()]
        if errors:
            return OperationResult.fail(
                f"Invalid jump chain: {'; '.join(errors)}",
                data={'validation': validation.to_dict()})

        await self._ensure_subscribed()
        chain = JumpChain(config=config)
        self._registry.add(chain)
        logger.info(f"Connecting to {config.target.label} through {len(config.jumps)} jump hosts "
                    f"({config.strategy.value})")

        try:
            hops, target = await self._establish(chain)
        except BrokerError as e:
            chain.status = JumpChainStatus.FAILED
            chain.last_error = str(e)
            logger.error(f"Jump chain {chain.id} failed: {e}")
            await self._event_bus.publish(EventNames.JUMP_CHAIN_FAILED, {
                'chain_id': chain.id,
                'target': config.target.label,
                'error': str(e),
            }, source=self.name)
            return OperationResult.fail(str(e), data={'chain_id': chain.id})

        chain.hops = hops
        chain.target_connection_id = target.id
        chain.status = JumpChainStatus.CONNECTED
        chain.connected_at = utc_now()

        if config.cache_successful_path:
            self._registry.path_cache[config.target.host] = (
                chain.path,
                utc_now() + timedelta(minutes=config.cache_duration_minutes),
            )

        logger.info(f"Jump chain {chain.id} connected: {' -> '.join(chain.path)} -> "
                    f"{config.target.label} ({chain.total_latency_ms:.0f}ms)")
        await self._event_bus.publish(EventNames.JUMP_CHAIN_CONNECTED, {
            'chain_id': chain.id,
            'connection_id': target.id,
            'path': chain.path,
        }, source=self.name)
        return OperationResult.ok(chain.to_dict(), warnings=validation.warnings)

    async def _establish(self, chain: JumpChain) -> Tuple[List[HopRecord], Connection]:
        config = chain.config
        hops: Optional[List[HopRecord]] = None
        last: Optional[Connection] = None

        cached = self._cached_order(config)
        if cached is not None:
            try:
                hops, last = await self._connect_path(cached, config)
                chain.used_cached_path = True
            except JumpChainError as e:
                logger.info(f"Cached path to {config.target.host} failed ({e}); re-selecting")
                self._registry.path_cache.pop(config.target.host, None)

        if hops is None:
            hops, last = await self._connect_by_strategy(config)

        total = sum(hop.latency_ms for hop in hops)
        if config.max_total_latency_ms is not None and total > config.max_total_latency_ms:
            raise JumpChainError(
                f"Total latency {total:.0f}ms exceeds max_total_latency_ms "
                f"{config.max_total_latency_ms:g}ms")

        target_config = config.target
        if config.timeout_per_hop_ms:
            target_config = replace(target_config, timeout_ms=config.timeout_per_hop_ms)
        try:
            target = await self._cm.get_or_create(target_config, via=last)
        except BrokerError as e:
            raise JumpChainError(
                f"Failed to reach target {config.target.label} through {len(hops)} hops: {e}")
        return hops, target

    async def _connect_by_strategy(self, config: JumpChainConfig) -> Tuple[List[HopRecord], Connection]:
        if config.strategy == JumpStrategy.SEQUENTIAL:
            return await self._connect_path(config.jumps, config)

        if config.strategy == JumpStrategy.OPTIMAL:
            try:
                ordered = await self._rank_by_probe(config)
            except ProbeFailure:
                raise
            except Exception as e:
                logger.warning(f"Hop probing failed ({e}); falling back to sequential order")
                ordered = list(config.jumps)
            return await self._connect_path(ordered, config)

        if config.strategy == JumpStrategy.FAILOVER:
            try:
                return await self._connect_path(config.jumps, config)
            except JumpChainError as first:
                reordered = sorted(config.jumps, key=lambda hop: -hop.priority)
                logger.info(f"Sequential chain failed ({first}); retrying by priority")
                try:
                    return await self._connect_path(reordered, config)
                except JumpChainError as second:
                    raise JumpChainError(f"{first}; failover attempt: {second}",
                                         second.hop_index, second.hop_host)

        raise JumpChainError(f"Unknown jump strategy: {config.strategy}")

    async def _connect_path(self, hops: Sequence[JumpHostConfig],
                            config: JumpChainConfig) -> Tuple[List[HopRecord], Connection]:
        """Connect each hop through the previous one, in the given order."""
        records: List[HopRecord] = []
        previous: Optional[Connection] = None
        timeout_ms = config.timeout_per_hop_ms or self._defaults.timeout_per_hop_ms

        for index, hop in enumerate(hops, 1):
            hop_config = replace(hop, timeout_ms=timeout_ms)
            started = time.perf_counter()
            try:
                connection = await self._cm.get_or_create(hop_config, via=previous)
                connect_ms = (time.perf_counter() - started) * 1000.0
                latency = await self._cm.probe(connection, timeout_ms=self._defaults.probe_timeout_ms)
            except BrokerError as e:
                raise JumpChainError(
                    f"Jump chain failed at hop {index} ({hop.hop_label}): {e}", index, hop.host)

            if hop.max_latency_ms is not None and latency > hop.max_latency_ms:
                raise JumpChainError(
                    f"Jump chain failed at hop {index} ({hop.hop_label}): latency {latency:.0f}ms "
                    f"exceeds max_latency_ms {hop.max_latency_ms:g}ms", index, hop.host)

            records.append(HopRecord(
                host=hop.host,
                port=hop.port,
                connection_id=connection.id,
                latency_ms=latency,
                connect_time_ms=connect_ms,
                via=connection.via,
            ))
            previous = connection

        if previous is None:
            raise JumpChainError("Jump chain has no hops")
        return records, previous

    async def _rank_by_probe(self, config: JumpChainConfig) -> List[JumpHostConfig]:
        """Probe every hop directly and order survivors by (priority desc, latency asc)."""
        timeout_ms = self._defaults.probe_timeout_ms

        async def probe_hop(hop: JumpHostConfig) -> float:
            connection = await self._cm.get_or_create(replace(hop, timeout_ms=timeout_ms))
            return await self._cm.probe(connection, timeout_ms=timeout_ms)

        if config.parallel_probe:
            results: List[Any] = await asyncio.gather(
                *(probe_hop(hop) for hop in config.jumps), return_exceptions=True)
        else:
            results = []
            for hop in config.jumps:
                try:
                    results.append(await probe_hop(hop))
                except BrokerError as e:
                    results.append(e)

        survivors: List[Tuple[JumpHostConfig, float]] = []
        failures: List[str] = []
        for hop, result in zip(config.jumps, results):
            if isinstance(result, BaseException):
                failures.append(f"{hop.hop_label}: {result}")
                logger.warning(f"Probe of jump host {hop.hop_label} failed: {result}")
            else:
                survivors.append((hop, result))

        if not survivors:
            raise ProbeFailure(f"All jump host probes failed: {'; '.join(failures)}")

        survivors.sort(key=lambda item: (-item[0].priority, item[1]))
        return [hop for hop, _ in survivors]

    def _cached_order(self, config: JumpChainConfig) -> Optional[List[JumpHostConfig]]:
        if not config.cache_successful_path:
            return None
        entry = self._registry.path_cache.get(config.target.host)
        if entry is None:
            return None
        labels, expires_at = entry
        if expires_at <= utc_now():
            del self._registry.path_cache[config.target.host]
            return None

        by_label = {hop.hop_label: hop for hop in config.jumps}
        if not all(label in by_label for label in labels):
            return None
        return [by_label[label] for label in labels]

    # Queries

    def get_jump_chain_status(self, chain_id: str) -> OperationResult:
        chain = self._registry.get(chain_id)
        if chain is None:
            return OperationResult.fail(f"Jump chain not found: {chain_id}")

        target = (self._cm.peek_connection(chain.target_connection_id)
                  if chain.target_connection_id else None)
        if chain.status != JumpChainStatus.CONNECTED or target is None or not target.is_live():
            health = 'failed'
        elif target.status == ConnectionStatus.DEGRADED:
            health = 'degraded'
        else:
            health = 'healthy'

        uptime = 0.0
        if chain.status == JumpChainStatus.CONNECTED and chain.connected_at:
            uptime = (utc_now() - chain.connected_at).total_seconds()

        data = chain.to_dict()
        data['health'] = health
        data['uptime_seconds'] = uptime
        return OperationResult.ok(data)

    def list_jump_chains(self) -> OperationResult:
        chains = [chain.to_dict() for chain in self._registry.all()]
        return OperationResult.ok({'chains': chains, 'count': len(chains)})

    def find_chain_for_connection(self, connection_id: str) -> Optional[JumpChain]:
        """The connected chain whose target is ``connection_id``, if any."""
        for chain in self._registry.all():
            if chain.target_connection_id == connection_id and chain.status == JumpChainStatus.CONNECTED:
                return chain
        return None

    # Teardown

    async def close_jump_chain(self, chain_id: str) -> OperationResult:
        chain = self._registry.get(chain_id)
        if chain is None:
            return OperationResult.fail(f"Jump chain not found: {chain_id}")

        await self._close(chain)
        return OperationResult.ok({'chain_id': chain_id, 'closed': True})

    def clear_path_cache(self) -> OperationResult:
        cleared = len(self._registry.path_cache)
        self._registry.path_cache.clear()
        return OperationResult.ok({'cleared': cleared})

    async def cleanup(self) -> int:
        chains = self._registry.all()
        for chain in chains:
            await self._close(chain)
        self._registry.path_cache.clear()
        return len(chains)

    async def _close(self, chain: JumpChain) -> None:
        # intermediate hops stay pooled; idle pruning reclaims them
        chain.status = JumpChainStatus.CLOSED
        chain.closed_at = utc_now()
        self._registry.remove(chain.id)

        # failed chains too, unless another connected chain now uses the target
        target_id = chain.target_connection_id
        if target_id and self.find_chain_for_connection(target_id) is None:
            if self._cm.peek_connection(target_id) is not None:
                await self._cm.disconnect(target_id)

        logger.info(f"Jump chain {chain.id} closed")
        await self._event_bus.publish(EventNames.JUMP_CHAIN_CLOSED, {
            'chain_id': chain.id,
        }, source=self.name)

    async def _on_connection_closed(self, event: Event) -> None:
        connection_id = (event.data or {}).get('connection_id')
        for chain in self._registry.all():
            if chain.status != JumpChainStatus.CONNECTED:
                continue
            hop_ids = {hop.connection_id for hop in chain.hops}
            if chain.target_connection_id == connection_id or connection_id in hop_ids:
                chain.status = JumpChainStatus.FAILED
                chain.last_error = f"Connection {connection_id} closed"
                logger.warning(f"Jump chain {chain.id} broken: {chain.last_error}")
                await self._event_bus.publish(EventNames.JUMP_CHAIN_FAILED, {
                    'chain_id': chain.id,
                    'error': chain.last_error,
                }, source=self.name)

    async def _ensure_subscribed(self) -> None:
        if self._subscription_id is None:
            self._subscription_id = await self._event_bus.subscribe(
                EventNames.CONNECTION_CLOSED, self._on_connection_closed)
