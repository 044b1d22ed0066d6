# azmachine

Building blocks for provisioning machines on Azure and Azure Stack Hub.

## Modules

- `azmachine.ttllru` provides caches.
  - `LRUCache(size)` is a thread-safe cache with a fixed size that evicts the least recently used entry.
  - `TTLLRUCache` wraps such a cache. Its entries expire `time_to_live` seconds after they were last touched.
  - `new(size, time_to_live)` builds a `TTLLRUCache` over an `LRUCache`.
  - `get` returns the value and renews its time to live. It raises `KeyError` if the key is missing or has expired.
  - `add` returns `True` when the backing cache evicted an entry.
  - `peek` returns `(value, expiration)` and does not renew the entry.
- `azmachine.recorder` is a process-wide event recorder.
  - `init_from_recorder` sets the default recorder. Only its first call has any effect.
  - `event`, `eventf`, `warn` and `warnf` record `EventType.NORMAL` or `EventType.WARNING` events.
  - Reasons are title-cased. The `*f` variants format the message with `%`.
  - `FakeRecorder`, the initial default, keeps what it receives as `RecordedEvent` values in its `events` list.
- `azmachine.termination` watches for spot-instance preemption.
  - `Handler(client, node_name, poll_interval, ...)` polls the scheduled-events metadata endpoint. It sends the header `Metadata: true`.
  - `Handler.run(stop)` polls until a `Preempt` event appears. It then marks the node with a `Terminating` condition through the client's `get_node` and `update_node_status`. It returns early when the `threading.Event` `stop` is set.
  - Failures raise `TerminationError`.
  - `ScheduledEvents.from_json`, `node_has_termination_condition` and `add_node_termination_condition` can be used on their own.
- `azmachine.virtualnetworks` handles virtual networks.
  - `VirtualNetworkService` has `get`, `create_or_update` and `delete`.
  - `create_or_update` does nothing if the network already exists.
  - The module also defines the shared `ServiceScope`, `ResourceNotFoundError` and `InvalidSpecError`.
- `azmachine.vmextensions` handles VM extensions.
  - `ExtensionService` creates, gets and deletes custom-script VM extensions.
- `azmachine.subnets` handles subnets.
  - `SubnetService` creates, gets and deletes subnets.
  - You supply lookups for route tables and network security groups as callables.
- `azmachine.virtualmachines` handles virtual machines.
  - `VirtualMachineService` gets, creates and deletes VMs. It does not wait for create and delete to finish.
  - `derive_virtual_machine_parameters` builds the request body.
  - Helper functions: `generate_os_profile`, `generate_data_disks`, `get_spot_vm_options`, `generate_image_plan`, `availability_set_id`, `generate_random_string` and `generate_ssh_public_key`.
- `azmachine.virtualmachines_stack` handles virtual machines on Azure Stack Hub.
  - `StackHubVirtualMachineService` is the narrower variant for Azure Stack Hub.
  - `new_service` returns it when `scope.is_stack_hub` is set, and a `VirtualMachineService` otherwise.

The `new_service` factories in `virtualnetworks`, `vmextensions` and `subnets` pass `scope.is_stack_hub` on to the service. For Stack Hub, virtual networks and extensions are created without tags.

## Example

```python
from azmachine.ttllru import new

cache = new(128, 30.0)
cache.add("foo", "bar")
print(cache.get("foo"))  # "bar"
```

Validating data disks before a VM is created:

```python
from azmachine.virtualmachines import DataDisk, VMSpec, generate_data_disks

spec = VMSpec(name="testvm", data_disks=[DataDisk(name_suffix="data", disk_size_gb=4, lun=0,
                                                  deletion_policy="Delete")])
disks = generate_data_disks(spec)
```

A disk that breaks a rule raises `InvalidMachineConfigurationError`. The rules are:

- the overall name is at most 80 characters;
- the name suffix has a valid form and is unique;
- the size is at least 4 GB;
- Ultra disks have no caching;
- the LUN is between 0 and 63 and is unique;
- the deletion policy is `Delete` or `Detach`.

## What it does not do

- It ships no command and no controller loop.
- It contains no cloud or cluster API client. Every service works over a client object you pass in.
- The termination handler reads and updates nodes through a client you pass in.
- Network interfaces, route tables and security groups are looked up by callables you provide.

## Tests

```
pip install -e .[test]
pytest
```