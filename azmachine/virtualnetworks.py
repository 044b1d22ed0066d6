"""Virtual network operations against a network management client."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

_logger = logging.getLogger(__name__)


class ResourceNotFoundError(LookupError):
    """Raised when a cloud resource does not exist."""


class InvalidSpecError(TypeError):
    """Raised when a service is handed a specification of the wrong kind."""


@dataclass
class ServiceScope:
    """Account and placement settings shared by the resource services."""

    subscription_id: str = ""
    resource_group: str = ""
    network_resource_group: str = ""
    location: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    resource_manager_endpoint: str = ""
    is_stack_hub: bool = False


class _Poller(Protocol):
    def wait(self) -> None: ...

    def result(self) -> Any: ...


class _VirtualNetworksClient(Protocol):
    def get(self, resource_group: str, name: str) -> Any: ...

    def begin_create_or_update(
        self, resource_group: str, name: str, parameters: dict[str, Any]
    ) -> _Poller: ...

    def begin_delete(self, resource_group: str, name: str) -> _Poller: ...


@dataclass(frozen=True)
class VirtualNetworkSpec:
    """Input for get, create-or-update and delete of a virtual network."""

    name: str
    cidr: str = ""


class VirtualNetworkService:
    """Gets, creates and deletes virtual networks in the network resource group."""

    def __init__(
        self, client: _VirtualNetworksClient, scope: ServiceScope, stack_hub: bool = False
    ) -> None:
        self.client = client
        self.scope = scope
        self.stack_hub = stack_hub

    @staticmethod
    def _check(spec: object) -> VirtualNetworkSpec:
        if not isinstance(spec, VirtualNetworkSpec):
            raise InvalidSpecError("Invalid VNET Specification")
        return spec

    def get(self, spec: VirtualNetworkSpec) -> Any:
        """Return the virtual network described by ``spec``."""
        vnet_spec = self._check(spec)
        try:
            return self.client.get(self.scope.network_resource_group, vnet_spec.name)
        except ResourceNotFoundError as exc:
            raise ResourceNotFoundError(f"vnet {vnet_spec.name} not found: {exc}") from exc

    def create_or_update(self, spec: VirtualNetworkSpec) -> None:
        """Create the virtual network unless it already exists; it is immutable."""
        vnet_spec = self._check(spec)
        try:
            self.get(vnet_spec)
        except Exception:
            pass
        else:
            return

        _logger.debug("creating vnet %s", vnet_spec.name)
        parameters: dict[str, Any] = {
            "location": self.scope.location,
            "properties": {"addressSpace": {"addressPrefixes": [vnet_spec.cidr]}},
        }
        if not self.stack_hub:
            parameters["tags"] = dict(self.scope.tags)

        poller = self.client.begin_create_or_update(
            self.scope.network_resource_group, vnet_spec.name, parameters
        )
        poller.wait()
        poller.result()
        _logger.debug("successfully created vnet %s", vnet_spec.name)

    def delete(self, spec: VirtualNetworkSpec) -> None:
        """Delete the virtual network; a missing network counts as deleted."""
        vnet_spec = self._check(spec)
        group = self.scope.network_resource_group
        _logger.debug("deleting vnet %s", vnet_spec.name)
        try:
            poller = self.client.begin_delete(group, vnet_spec.name)
        except ResourceNotFoundError:
            return
        except Exception as exc:
            raise RuntimeError(
                f"failed to delete vnet {vnet_spec.name} in resource group {group}: {exc}"
            ) from exc

        try:
            poller.wait()
        except Exception as exc:
            raise RuntimeError(f"cannot delete, future response: {exc}") from exc

        poller.result()
        _logger.debug("successfully deleted vnet %s", vnet_spec.name)


def new_service(scope: ServiceScope, client: _VirtualNetworksClient) -> VirtualNetworkService:
    """Build the virtual network service suited to the scope's cloud."""
    return VirtualNetworkService(client, scope, stack_hub=scope.is_stack_hub)