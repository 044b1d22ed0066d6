import pytest

from azmachine.virtualmachines import (
    DEFAULT_USER_NAME,
    OS_TYPE_LINUX,
    OS_TYPE_WINDOWS,
    DataDisk,
    Image,
    OSDisk,
    VirtualMachineService,
    VMSpec,
    availability_set_id,
)
from azmachine.virtualmachines_stack import (
    StackHubVirtualMachineService,
    generate_os_profile_stack_hub,
    new_service,
)
from azmachine.virtualnetworks import ResourceNotFoundError, ServiceScope

SUBSCRIPTION = "226e02ba-43d1-43d3-a02a-19e584a4ef67"
SSH_KEY = "ssh-rsa AAAAplaceholder test@example.com"


class _Poller:
    def __init__(self, value=None):
        self.value = value

    def result(self):
        return self.value


class _Client:
    def __init__(self, vms=None, delete_error=None):
        self.vms = vms or {}
        self.delete_error = delete_error
        self.calls = []

    def get(self, resource_group, name, expand=None):
        self.calls.append(("get", resource_group, name, expand))
        if name not in self.vms:
            raise ResourceNotFoundError(name)
        return self.vms[name]

    def begin_create_or_update(self, resource_group, name, parameters):
        self.calls.append(("create", resource_group, name, parameters))
        return _Poller(parameters)

    def begin_delete(self, resource_group, name):
        self.calls.append(("delete", resource_group, name))
        if self.delete_error is not None:
            raise self.delete_error
        return _Poller()


def _scope(**kwargs):
    return ServiceScope(
        subscription_id=SUBSCRIPTION,
        resource_group="foobar",
        location="eastus",
        is_stack_hub=True,
        **kwargs,
    )


def _spec(**kwargs):
    defaults = dict(
        name="my-awesome-machine",
        nic_name="gxqb-master-nic",
        ssh_key_data=SSH_KEY,
        size="Standard_D4s_v3",
        image=Image(publisher="Red Hat Inc", offer="ubi", sku="ubi7", version="latest"),
        os_disk=OSDisk(os_type=OS_TYPE_LINUX, disk_size_gb=256),
    )
    defaults.update(kwargs)
    return VMSpec(**defaults)


def _nic():
    return {"id": f"/subscriptions/{SUBSCRIPTION}/nic/gxqb-master-nic"}


def test_derive_uses_image_fields_and_scope_location():
    service = StackHubVirtualMachineService(_Client(), _scope())
    vm = service.derive_virtual_machine_parameters(_spec(), _nic())
    assert vm["location"] == "eastus"
    storage = vm["properties"]["storageProfile"]
    assert storage["imageReference"] == {
        "publisher": "Red Hat Inc",
        "offer": "ubi",
        "sku": "ubi7",
        "version": "latest",
    }
    assert storage["osDisk"]["name"] == "my-awesome-machine_OSDisk"
    assert storage["osDisk"]["diskSizeGB"] == 256
    assert vm["properties"]["hardwareProfile"] == {"vmSize": "Standard_D4s_v3"}


def test_derive_network_interface_is_primary():
    service = StackHubVirtualMachineService(_Client(), _scope())
    vm = service.derive_virtual_machine_parameters(_spec(), _nic())
    interfaces = vm["properties"]["networkProfile"]["networkInterfaces"]
    assert interfaces == [{"id": _nic()["id"], "properties": {"primary": True}}]


def test_derive_image_resource_id_replaces_reference():
    service = StackHubVirtualMachineService(_Client(), _scope())
    spec = _spec(image=Image(resource_id="/resourceGroups/rg/images/img"))
    vm = service.derive_virtual_machine_parameters(spec, _nic())
    assert vm["properties"]["storageProfile"]["imageReference"] == {
        "id": f"/subscriptions/{SUBSCRIPTION}/resourceGroups/rg/images/img"
    }


def test_derive_ignores_features_missing_on_stack_hub():
    service = StackHubVirtualMachineService(_Client(), _scope())
    spec = _spec(
        data_disks=[DataDisk(name_suffix="d", disk_size_gb=4, deletion_policy="Delete")],
        image=Image(publisher="p", offer="o", sku="s", type="MarketplaceWithPlan"),
        managed_identity="identity",
    )
    vm = service.derive_virtual_machine_parameters(spec, _nic())
    assert "plan" not in vm
    assert "identity" not in vm
    assert "dataDisks" not in vm["properties"]["storageProfile"]
    assert "additionalCapabilities" not in vm["properties"]


def test_derive_keeps_tags():
    service = StackHubVirtualMachineService(_Client(), _scope())
    tags = {"kubernetes.io_cluster.test": "owned", "created-by": "ocp"}
    vm = service.derive_virtual_machine_parameters(_spec(tags=tags), _nic())
    assert vm["tags"] == tags


def test_derive_zone_and_availability_set():
    service = StackHubVirtualMachineService(_Client(), _scope())
    spec = _spec(zone="2", availability_set_name="avset")
    vm = service.derive_virtual_machine_parameters(spec, _nic())
    assert vm["zones"] == ["2"]
    assert vm["availabilitySet"] == {
        "id": availability_set_id(SUBSCRIPTION, "foobar", "avset")
    }


def test_derive_without_zone_has_no_zones():
    service = StackHubVirtualMachineService(_Client(), _scope())
    vm = service.derive_virtual_machine_parameters(_spec(), _nic())
    assert "zones" not in vm
    assert "availabilitySet" not in vm


def test_os_profile_linux_uses_given_key():
    profile = generate_os_profile_stack_hub(_spec(custom_data="Y2xvdWQ="))
    keys = profile["linuxConfiguration"]["ssh"]["publicKeys"]
    assert keys == [
        {"path": f"/home/{DEFAULT_USER_NAME}/.ssh/authorized_keys", "keyData": SSH_KEY}
    ]
    assert profile["customData"] == "Y2xvdWQ="
    assert profile["computerName"] == "my-awesome-machine"
    assert "windowsConfiguration" not in profile


def test_os_profile_linux_generates_key_when_missing():
    profile = generate_os_profile_stack_hub(_spec(ssh_key_data=""))
    key_data = profile["linuxConfiguration"]["ssh"]["publicKeys"][0]["keyData"]
    assert key_data.startswith("ssh-rsa ")


def test_os_profile_windows_auto_logon_holds_admin_secret():
    profile = generate_os_profile_stack_hub(
        _spec(ssh_key_data="", os_disk=OSDisk(os_type=OS_TYPE_WINDOWS))
    )
    assert "linuxConfiguration" not in profile
    windows = profile["windowsConfiguration"]
    assert windows["enableAutomaticUpdates"] is False
    contents = windows["additionalUnattendContent"]
    assert [c["settingName"] for c in contents] == ["AutoLogon", "FirstLogonCommands"]
    assert profile["adminPassword"] in contents[0]["content"]
    assert "customData" not in profile


def test_os_profile_admin_secrets_differ():
    first = generate_os_profile_stack_hub(_spec())
    second = generate_os_profile_stack_hub(_spec())
    assert first["adminPassword"] != second["adminPassword"]
    assert first["adminUsername"] == DEFAULT_USER_NAME


def test_get_requests_instance_view():
    client = _Client(vms={"my-awesome-machine": {"name": "my-awesome-machine"}})
    service = StackHubVirtualMachineService(client, _scope())
    assert service.get(_spec()) == {"name": "my-awesome-machine"}
    assert client.calls == [("get", "foobar", "my-awesome-machine", "instanceView")]


def test_get_missing_raises():
    service = StackHubVirtualMachineService(_Client(), _scope())
    with pytest.raises(ResourceNotFoundError):
        service.get(_spec())


def test_invalid_spec_raises():
    service = StackHubVirtualMachineService(_Client(), _scope())
    with pytest.raises(TypeError, match="invalid vm specification"):
        service.get(object())
    with pytest.raises(TypeError, match="invalid vm Specification"):
        service.delete(object())


def test_create_or_update_sends_derived_parameters():
    client = _Client()
    requested = []

    def nic_getter(name):
        requested.append(name)
        return _nic()

    service = StackHubVirtualMachineService(client, _scope(), nic_getter)
    service.create_or_update(_spec())
    assert requested == ["gxqb-master-nic"]
    kind, group, name, parameters = client.calls[0]
    assert (kind, group, name) == ("create", "foobar", "my-awesome-machine")
    assert parameters["properties"]["networkProfile"]["networkInterfaces"][0]["id"] == _nic()["id"]


def test_create_or_update_rejects_bad_nic():
    service = StackHubVirtualMachineService(_Client(), _scope(), lambda name: "nic")
    with pytest.raises(TypeError, match="error getting network security group"):
        service.create_or_update(_spec())


def test_create_or_update_without_nic_lookup_fails():
    service = StackHubVirtualMachineService(_Client(), _scope())
    with pytest.raises(RuntimeError):
        service.create_or_update(_spec())


def test_delete_missing_is_ignored():
    client = _Client(delete_error=ResourceNotFoundError("gone"))
    service = StackHubVirtualMachineService(client, _scope())
    assert service.delete(_spec()) is None
    assert client.calls == [("delete", "foobar", "my-awesome-machine")]


def test_delete_other_error_is_wrapped():
    client = _Client(delete_error=OSError("boom"))
    service = StackHubVirtualMachineService(client, _scope())
    with pytest.raises(RuntimeError, match="failed to delete vm my-awesome-machine in resource group foobar"):
        service.delete(_spec())


def test_new_service_picks_by_cloud():
    client = _Client()
    stack = new_service(_scope(), client)
    assert isinstance(stack, StackHubVirtualMachineService)
    assert stack.client is client
    public = new_service(ServiceScope(resource_group="foobar"), client)
    assert isinstance(public, VirtualMachineService)
    assert public.scope.resource_group == "foobar"