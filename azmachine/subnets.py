"""Subnet operations against a network management client."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from azmachine.virtualnetworks import (
    InvalidSpecError,
    ResourceNotFoundError,
    ServiceScope,
)

_logger = logging.getLogger(__name__)


class _Poller(Protocol):
    def wait(self) -> None: ...

    def result(self) -> Any: ...


class _SubnetsClient(Protocol):
    def get(self, resource_group: str, vnet_name: str, name: str) -> Any: ...

    def begin_create_or_update(
        self, resource_group: str, vnet_name: str, name: str, parameters: dict[str, Any]
    ) -> _Poller: ...

    def begin_delete(self, resource_group: str, vnet_name: str, name: str) -> _Poller: ...


@dataclass(frozen=True)
class SubnetSpec:
    """Input for get, create-or-update and delete of a subnet."""

    name: str
    vnet_name: str
    cidr: str = ""
    route_table_name: str = ""
    security_group_name: str = ""


class SubnetService:
    """Gets, creates and deletes subnets in the network resource group.

    ``route_tables`` and ``security_groups`` look up a route table or a network
    security group by name and return its description.
    """

    def __init__(
        self,
        client: _SubnetsClient,
        scope: ServiceScope,
        route_tables: Callable[[str], Any],
        security_groups: Callable[[str], Any],
        stack_hub: bool = False,
    ) -> None:
        self.client = client
        self.scope = scope
        self.route_tables = route_tables
        self.security_groups = security_groups
        self.stack_hub = stack_hub

    @staticmethod
    def _check(spec: object) -> SubnetSpec:
        if not isinstance(spec, SubnetSpec):
            raise InvalidSpecError("Invalid Subnet Specification")
        return spec

    def get(self, spec: SubnetSpec) -> Any:
        """Return the subnet described by ``spec``."""
        subnet = self._check(spec)
        try:
            return self.client.get(
                self.scope.network_resource_group, subnet.vnet_name, subnet.name
            )
        except ResourceNotFoundError as exc:
            raise ResourceNotFoundError(f"subnet {subnet.name} not found: {exc}") from exc

    def create_or_update(self, spec: SubnetSpec) -> None:
        """Create or update the subnet with its security group and optional route table."""
        subnet = self._check(spec)
        properties: dict[str, Any] = {"addressPrefix": subnet.cidr}

        if subnet.route_table_name:
            _logger.debug("getting route table %s", subnet.route_table_name)
            route_table = self.route_tables(subnet.route_table_name)
            if not isinstance(route_table, Mapping):
                raise TypeError("error getting route table")
            _logger.debug("successfully got route table %s", subnet.route_table_name)
            properties["routeTable"] = route_table

        _logger.debug("getting nsg %s", subnet.security_group_name)
        security_group = self.security_groups(subnet.security_group_name)
        if not isinstance(security_group, Mapping):
            raise TypeError("error getting network security group")
        _logger.debug("got nsg %s", subnet.security_group_name)
        properties["networkSecurityGroup"] = security_group

        group = self.scope.network_resource_group
        _logger.debug("creating subnet %s in vnet %s", subnet.name, subnet.vnet_name)
        try:
            poller = self.client.begin_create_or_update(
                group,
                subnet.vnet_name,
                subnet.name,
                {"name": subnet.name, "properties": properties},
            )
        except Exception as exc:
            raise RuntimeError(
                f"failed to create subnet {subnet.name} in resource group {group}: {exc}"
            ) from exc

        self._finish(poller)
        _logger.debug("successfully created subnet %s in vnet %s", subnet.name, subnet.vnet_name)

    def delete(self, spec: SubnetSpec) -> None:
        """Delete the subnet; a missing subnet counts as deleted."""
        subnet = self._check(spec)
        group = self.scope.network_resource_group
        _logger.debug("deleting subnet %s in vnet %s", subnet.name, subnet.vnet_name)
        try:
            poller = self.client.begin_delete(group, subnet.vnet_name, subnet.name)
        except ResourceNotFoundError:
            return
        except Exception as exc:
            raise RuntimeError(
                f"failed to delete route table {subnet.name} in resource group {group}: {exc}"
            ) from exc

        self._finish(poller)
        _logger.debug("successfully deleted subnet %s in vnet %s", subnet.name, subnet.vnet_name)

    @staticmethod
    def _finish(poller: _Poller) -> None:
        try:
            poller.wait()
        except Exception as exc:
            raise RuntimeError(f"cannot create, future response: {exc}") from exc
        try:
            poller.result()
        except Exception as exc:
            raise RuntimeError(f"result error: {exc}") from exc


def new_service(
    scope: ServiceScope,
    client: _SubnetsClient,
    route_tables: Callable[[str], Any],
    security_groups: Callable[[str], Any],
) -> SubnetService:
    """Build the subnet service suited to the scope's cloud."""
    return SubnetService(
        client, scope, route_tables, security_groups, stack_hub=scope.is_stack_hub
    )