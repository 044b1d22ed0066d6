"""Virtual machine operations for Azure Stack Hub, whose compute API is older and narrower."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Protocol

from azmachine.virtualmachines import (
    VirtualMachineService,
    VMSpec,
    availability_set_id,
    generate_os_profile,
)
from azmachine.virtualnetworks import ResourceNotFoundError, ServiceScope

_logger = logging.getLogger(__name__)


class _Poller(Protocol):
    def result(self) -> Any: ...


class _VirtualMachinesClient(Protocol):
    def get(self, resource_group: str, name: str, expand: str = ...) -> Any: ...

    def begin_create_or_update(
        self, resource_group: str, name: str, parameters: dict[str, Any]
    ) -> _Poller: ...

    def begin_delete(self, resource_group: str, name: str) -> _Poller: ...


def generate_os_profile_stack_hub(spec: VMSpec) -> dict[str, Any]:
    """Build the OS profile for a Stack Hub VM; it matches the public cloud profile."""
    return generate_os_profile(spec)


class StackHubVirtualMachineService:
    """Gets, creates and deletes virtual machines on Azure Stack Hub."""

    def __init__(
        self,
        client: _VirtualMachinesClient,
        scope: ServiceScope,
        nic_getter: Callable[[str], Any] | None = None,
    ) -> None:
        self.client = client
        self.scope = scope
        self.nic_getter = nic_getter

    @staticmethod
    def _check(spec: object, message: str) -> VMSpec:
        if not isinstance(spec, VMSpec):
            raise TypeError(message)
        return spec

    def get(self, spec: VMSpec) -> Any:
        """Return the virtual machine with its instance view."""
        vm_spec = self._check(spec, "invalid vm specification")
        try:
            return self.client.get(
                self.scope.resource_group, vm_spec.name, expand="instanceView"
            )
        except ResourceNotFoundError as exc:
            _logger.warning("vm %s not found: %s", vm_spec.name, exc)
            raise

    def create_or_update(self, spec: VMSpec) -> None:
        """Start creating the virtual machine without waiting for it to finish."""
        vm_spec = self._check(spec, "invalid vm specification")
        if self.nic_getter is None:
            raise RuntimeError("no network interface lookup configured")

        _logger.debug("getting nic %s", vm_spec.nic_name)
        nic = self.nic_getter(vm_spec.nic_name)
        if not isinstance(nic, Mapping):
            raise TypeError("error getting network security group3")
        _logger.debug("got nic %s", vm_spec.nic_name)

        _logger.debug("creating vm %s", vm_spec.name)
        parameters = self.derive_virtual_machine_parameters(vm_spec, nic)
        try:
            poller = self.client.begin_create_or_update(
                self.scope.resource_group, vm_spec.name, parameters
            )
        except Exception as exc:
            raise RuntimeError(f"cannot create vm: {exc}") from exc

        poller.result()
        _logger.debug("successfully created vm %s", vm_spec.name)

    def delete(self, spec: VMSpec) -> None:
        """Start deleting the virtual machine; a missing VM counts as deleted."""
        vm_spec = self._check(spec, "invalid vm Specification")
        group = self.scope.resource_group
        _logger.debug("deleting vm %s", vm_spec.name)
        try:
            poller = self.client.begin_delete(group, vm_spec.name)
        except ResourceNotFoundError:
            return
        except Exception as exc:
            raise RuntimeError(
                f"failed to delete vm {vm_spec.name} in resource group {group}: {exc}"
            ) from exc

        poller.result()
        _logger.debug("successfully deleted vm %s", vm_spec.name)

    def derive_virtual_machine_parameters(
        self, spec: VMSpec, nic: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Build the create-or-update parameters for ``spec`` attached to ``nic``."""
        os_profile = generate_os_profile_stack_hub(spec)

        if spec.image.resource_id:
            image_reference: dict[str, Any] = {
                "id": f"/subscriptions/{self.scope.subscription_id}{spec.image.resource_id}"
            }
        else:
            image_reference = {
                "publisher": spec.image.publisher,
                "offer": spec.image.offer,
                "sku": spec.image.sku,
                "version": spec.image.version,
            }

        vm: dict[str, Any] = {
            "location": self.scope.location,
            "tags": spec.tags,
            "properties": {
                "hardwareProfile": {"vmSize": spec.size},
                "storageProfile": {
                    "imageReference": image_reference,
                    "osDisk": {
                        "name": f"{spec.name}_OSDisk",
                        "osType": spec.os_disk.os_type,
                        "createOption": "FromImage",
                        "diskSizeGB": spec.os_disk.disk_size_gb,
                        "managedDisk": {
                            "storageAccountType": spec.os_disk.storage_account_type,
                        },
                    },
                },
                "osProfile": os_profile,
                "networkProfile": {
                    "networkInterfaces": [
                        {"id": nic.get("id"), "properties": {"primary": True}}
                    ]
                },
            },
        }

        if spec.zone:
            vm["zones"] = [spec.zone]
        if spec.availability_set_name:
            vm["availabilitySet"] = {
                "id": availability_set_id(
                    self.scope.subscription_id,
                    self.scope.resource_group,
                    spec.availability_set_name,
                )
            }
        return vm


def new_service(
    scope: ServiceScope,
    client: _VirtualMachinesClient,
    nic_getter: Callable[[str], Any] | None = None,
) -> VirtualMachineService | StackHubVirtualMachineService:
    """Build the virtual machine service suited to the scope's cloud."""
    if scope.is_stack_hub:
        return StackHubVirtualMachineService(client, scope, nic_getter)
    return VirtualMachineService(client, scope, nic_getter)