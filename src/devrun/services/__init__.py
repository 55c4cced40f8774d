"""Service implementations and their factory."""

from typing import Callable, Optional

from ..errors import UnknownServiceType
from ..resolver import ResolvedEntry
from .base import Service, ServiceContext
from .command import CommandService
from .compose import ComposeRegistry
from .container import ContainerService

SERVICE_TYPES: dict[str, type[Service]] = {
    "cmd": CommandService,
    "docker": ContainerService,
}


def create_service(
    entry: ResolvedEntry,
    context: ServiceContext,
    on_exit: Optional[Callable[[], None]] = None,
) -> Service:
    """Instantiate the service implementation for a resolved entry.

    Raises:
        UnknownServiceType: No implementation for the entry's type tag.
    """
    service_type = getattr(entry.config, "type", None)
    service_class = SERVICE_TYPES.get(service_type)
    if service_class is None:
        raise UnknownServiceType(str(service_type), entry.name)
    return service_class(entry, context, on_exit)


__all__ = [
    "SERVICE_TYPES",
    "ComposeRegistry",
    "CommandService",
    "ContainerService",
    "Service",
    "ServiceContext",
    "create_service",
]
