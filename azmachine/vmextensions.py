"""Virtual machine extension operations against a compute management client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from azmachine.virtualnetworks import (
    InvalidSpecError,
    ResourceNotFoundError,
    ServiceScope,
)

_logger = logging.getLogger(__name__)


class _Poller(Protocol):
    def wait(self) -> None: ...

    def result(self) -> Any: ...


class _ExtensionsClient(Protocol):
    def get(self, resource_group: str, vm_name: str, name: str) -> Any: ...

    def begin_create_or_update(
        self, resource_group: str, vm_name: str, name: str, parameters: dict[str, Any]
    ) -> _Poller: ...

    def begin_delete(self, resource_group: str, vm_name: str, name: str) -> _Poller: ...


@dataclass(frozen=True)
class ExtensionSpec:
    """Input for get, create-or-update and delete of a VM extension."""

    name: str
    vm_name: str
    script_data: str = ""


class ExtensionService:
    """Gets, creates and deletes custom-script extensions on virtual machines."""

    def __init__(
        self, client: _ExtensionsClient, scope: ServiceScope, stack_hub: bool = False
    ) -> None:
        self.client = client
        self.scope = scope
        self.stack_hub = stack_hub

    @staticmethod
    def _check(spec: object, message: str) -> ExtensionSpec:
        if not isinstance(spec, ExtensionSpec):
            raise InvalidSpecError(message)
        return spec

    def get(self, spec: ExtensionSpec) -> Any:
        """Return the extension described by ``spec``."""
        ext = self._check(spec, "invalid vm specification")
        try:
            return self.client.get(self.scope.resource_group, ext.vm_name, ext.name)
        except ResourceNotFoundError as exc:
            raise ResourceNotFoundError(f"vm extension {ext.name} not found: {exc}") from exc

    def create_or_update(self, spec: ExtensionSpec) -> None:
        """Create or update a custom-script extension running ``spec.script_data``."""
        ext = self._check(spec, "invalid vm specification")
        _logger.debug("creating vm extension %s", ext.name)

        parameters: dict[str, Any] = {
            "name": ext.name,
            "location": self.scope.location,
            "properties": {
                "type": "CustomScript",
                "typeHandlerVersion": "2.0",
                "autoUpgradeMinorVersion": True,
                "settings": {"skipDos2Unix": True},
                "publisher": "Microsoft.Azure.Extensions",
                "protectedSettings": {"script": ext.script_data},
            },
        }
        if not self.stack_hub:
            parameters["tags"] = dict(self.scope.tags)

        try:
            poller = self.client.begin_create_or_update(
                self.scope.resource_group, ext.vm_name, ext.name, parameters
            )
        except Exception as exc:
            raise RuntimeError(f"cannot create vm extension: {exc}") from exc

        try:
            poller.wait()
        except Exception as exc:
            raise RuntimeError(
                f"cannot get the extension create or update future response: {exc}"
            ) from exc

        try:
            poller.result()
        except Exception as exc:
            raise RuntimeError(f"cannot create vm: {exc}") from exc

        _logger.debug("successfully created vm extension %s", ext.name)

    def delete(self, spec: ExtensionSpec) -> None:
        """Delete the extension; a missing extension counts as deleted."""
        ext = self._check(spec, "Invalid VNET Specification")
        group = self.scope.resource_group
        _logger.debug("deleting vm extension %s", ext.name)
        try:
            poller = self.client.begin_delete(group, ext.vm_name, ext.name)
        except ResourceNotFoundError:
            return
        except Exception as exc:
            raise RuntimeError(
                f"failed to delete vm extension {ext.name} in resource group {group}: {exc}"
            ) from exc

        try:
            poller.wait()
        except Exception as exc:
            raise RuntimeError(f"cannot delete, future response: {exc}") from exc

        poller.result()
        _logger.debug("successfully deleted vm %s", ext.name)


def new_service(scope: ServiceScope, client: _ExtensionsClient) -> ExtensionService:
    """Build the extension service suited to the scope's cloud."""
    return ExtensionService(client, scope, stack_hub=scope.is_stack_hub)