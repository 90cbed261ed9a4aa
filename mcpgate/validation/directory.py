"""Thread-safe service directory backed by validated service configs."""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set, Tuple

from mcpgate.validation.config import (
    Config,
    ConfigError,
    ServiceConfig,
    ToolState,
    normalize_tool_states,
    normalize_transport,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_identifier(value: str) -> str:
    """Lower-case ``value`` and collapse everything but ``[a-z0-9]`` runs into single dashes."""
    return re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")


def generate_unique_id(used: Set[str], candidates: Iterable[str], fallback: str) -> str:
    base = ""
    for candidate in candidates:
        base = sanitize_identifier(candidate or "")
        if base:
            break
    base = base or fallback
    if base not in used:
        return base
    i = 2
    while f"{base}-{i}" in used:
        i += 1
    return f"{base}-{i}"


class ServiceDirectory:
    """
    The set of configured MCP services.

    Readers get copies, so nothing outside the directory mutates its state.
    Every mutation is validated, then handed to ``persist`` (if given) and
    announced to the registered change listeners, which is how a tool
    registry learns that its cache is stale.
    """

    def __init__(
        self,
        services: Optional[Iterable[ServiceConfig]] = None,
        persist: Optional[Callable[[List[ServiceConfig]], None]] = None,
    ):
        self._services: List[ServiceConfig] = []
        self._persist = persist
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.RLock()

        for service in services or []:
            service = service.model_copy(deep=True)
            service.transport = normalize_transport(service.transport)
            service.tool_states = normalize_tool_states(service.tool_states)
            try:
                service.validate_service()
            except ConfigError as e:
                raise ConfigError(f"invalid mcp service {service.id!r}: {e}")
            self._services.append(service)

    @classmethod
    def from_config(cls, config: Config) -> "ServiceDirectory":
        """Build a directory whose mutations are saved back to ``config``."""

        def persist(services: List[ServiceConfig]) -> None:
            config.set_services(services)
            config.save()

        return cls(config.get_services(), persist=persist)

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    # ── Reads ─────────────────────────────────────────────────────────────

    def list_services(self) -> List[ServiceConfig]:
        with self._lock:
            return [service.model_copy(deep=True) for service in self._services]

    def list_enabled_services(self) -> List[ServiceConfig]:
        return [service for service in self.list_services() if service.enabled]

    def get_service(self, service_id: str) -> Optional[ServiceConfig]:
        service_id = service_id.strip()
        with self._lock:
            for service in self._services:
                if service.id == service_id:
                    return service.model_copy(deep=True)
        return None

    def is_tool_enabled(self, service_id: str, tool_name: str) -> bool:
        """Tools are enabled unless explicitly disabled; unknown services have none."""
        service = self.get_service(service_id)
        if service is None:
            return False
        return service.is_tool_enabled(tool_name)

    # ── Mutations ─────────────────────────────────────────────────────────

    def upsert_service(self, service: ServiceConfig) -> ServiceConfig:
        """
        Insert or replace a service.

        A missing id is resolved by matching the endpoint of an existing
        service, or generated from the name/endpoint/command. On update, an
        omitted auth token or tool state list keeps the stored one.

        Raises:
            ConfigError: If the resulting definition is invalid.
        """
        service = service.model_copy(
            deep=True,
            update={
                "id": service.id.strip(),
                "name": service.name.strip(),
                "endpoint": service.endpoint.strip(),
                "command": service.command.strip(),
                "transport": normalize_transport(service.transport),
                "auth_token": (service.auth_token or "").strip() or None,
                "tool_states": normalize_tool_states(service.tool_states),
            },
        )

        with self._lock:
            if not service.id and service.endpoint:
                for existing in self._services:
                    if existing.endpoint.strip() == service.endpoint:
                        service.id = existing.id
                        break
            if not service.id:
                used = {existing.id for existing in self._services}
                service.id = generate_unique_id(
                    used, [service.name, service.endpoint, service.command], "service"
                )
            if not service.name:
                service.name = service.id
            service.validate_service()
            service.updated_at = _now()

            services = list(self._services)
            for i, existing in enumerate(services):
                if existing.id == service.id:
                    if service.auth_token is None:
                        service.auth_token = existing.auth_token
                    if not service.tool_states:
                        service.tool_states = [s.model_copy() for s in existing.tool_states]
                    services[i] = service
                    break
            else:
                services.append(service)

            self._commit(services)
            return service.model_copy(deep=True)

    def delete_service(self, service_id: str) -> None:
        service_id = service_id.strip()
        if not service_id:
            raise ConfigError("service id is required")
        with self._lock:
            self._commit([s for s in self._services if s.id != service_id])

    def set_enabled(self, service_id: str, enabled: bool) -> None:
        with self._lock:
            i, current = self._find(service_id)
            updated = current.model_copy(deep=True, update={"enabled": enabled, "updated_at": _now()})
            self._commit(self._services[:i] + [updated] + self._services[i + 1 :])

    def set_tool_enabled(self, service_id: str, tool_name: str, enabled: bool) -> None:
        tool_name = tool_name.strip()
        if not tool_name:
            raise ConfigError("tool name is required")
        with self._lock:
            i, current = self._find(service_id)
            now = _now()
            states = [s for s in current.tool_states if s.name != tool_name]
            if not enabled:
                states.append(ToolState(name=tool_name, enabled=False, updated_at=now))
            updated = current.model_copy(
                deep=True,
                update={"tool_states": normalize_tool_states(states), "updated_at": now},
            )
            self._commit(self._services[:i] + [updated] + self._services[i + 1 :])

    def _find(self, service_id: str) -> Tuple[int, ServiceConfig]:
        service_id = service_id.strip()
        if not service_id:
            raise ConfigError("service id is required")
        for i, service in enumerate(self._services):
            if service.id == service_id:
                return i, service
        raise ConfigError(f"service {service_id!r} not found")

    def _commit(self, services: List[ServiceConfig]) -> None:
        """Persist ``services``, then make them current and notify listeners."""
        if self._persist is not None:
            self._persist([service.model_copy(deep=True) for service in services])
        self._services = services
        for listener in self._listeners:
            listener()
        logger.debug("service directory changed (%d services)", len(services))
