# vmdhcp

`vmdhcp` holds the bookkeeping behind handing out DHCP leases to virtual
machines on secondary networks. It models two resources and reconciles them:

- **IPPool** (`vmdhcp.apis.IPPool`): a network's IPv4 settings (CIDR, server
  IP, router, pool range, excluded addresses, DNS, NTP, lease time) and a
  status recording which address is held by which MAC address, the used and
  available counts, and the agent pod serving the pool.
- **VirtualMachineNetworkConfig** (`vmdhcp.apis.VirtualMachineNetworkConfig`):
  the MAC addresses of one virtual machine and the networks they are attached
  to, with the addresses that have been allocated to them.

Around these sit:

- `vmdhcp.cache.CacheAllocator`: a per-network MAC-to-IP cache.
- `vmdhcp.ippool_controller.IPAllocator`: per-network address management over
  a pool range, with allocated and revoked addresses.
- `vmdhcp.ippool_controller.MetricsRecorder`: in-memory gauges for pool usage
  and network config allocations.
- `vmdhcp.ippool_controller.Handler`: reconciles IPPools. It builds the IPAM
  and MAC caches from a pool's spec and status, deploys and watches the agent
  pod that serves the pool, and keeps the pool's used/available counts current.
- `vmdhcp.vmnetcfg_controller.Handler`: allocates addresses for a virtual
  machine's network configs and releases them when the config is paused or
  removed.
- `vmdhcp.vm_controller.Handler`: derives a VirtualMachineNetworkConfig from a
  `vmdhcp.vm_controller.VirtualMachine` description.
- `vmdhcp.agent_pool.PoolController`: the agent side, which keeps a
  `LeaseStore` in step with the allocations recorded in its IPPool.
- `vmdhcp.kube.ObjectStore`: an in-memory object store with `get`, `create`,
  `update`, `update_status`, `delete` and `list` by labels; it raises
  `NotFoundError` and `AlreadyExistsError` as the reconcilers expect.

The package has no dependencies beyond the standard library.

## The MAC cache

```python
from vmdhcp.cache import CacheAllocator, NetworkNotFoundError

cache = CacheAllocator()
cache.new_mac_set("default/net-1")
cache.add_mac("default/net-1", "02:00:00:00:00:01", "192.168.0.111")

cache.has_mac("default/net-1", "02:00:00:00:00:01")        # True
cache.get_ip_by_mac("default/net-1", "02:00:00:00:00:01")  # "192.168.0.111"
cache.list_all("default/net-1")   # {"02:00:00:00:00:01": "192.168.0.111"}

try:
    cache.has_mac("default/missing", "02:00:00:00:00:01")
except NetworkNotFoundError as exc:
    print(exc)   # network default/missing does not exist
```

Any lookup in a network that was never created raises `NetworkNotFoundError`;
asking for the address of an unknown MAC raises `MACNotFoundError`.

`CacheAllocatorBuilder` builds a populated cache in one expression:

```python
from vmdhcp.cache import CacheAllocatorBuilder

cache = (
    CacheAllocatorBuilder()
    .mac_set("default/net-1")
    .add("default/net-1", "02:00:00:00:00:01", "192.168.0.111")
    .build()
)
```

## Address management

```python
from vmdhcp.ippool_controller import IPAllocator

ipam = IPAllocator()
ipam.new_ip_subnet("default/net-1", "192.168.0.0/24", "192.168.0.101", "192.168.0.200")
ipam.revoke_ip("default/net-1", "192.168.0.150")   # withheld from allocation
ipam.allocate_ip("default/net-1", "")              # "192.168.0.101", the first free address
ipam.allocate_ip("default/net-1", "192.168.0.177") # that exact address
ipam.get_used("default/net-1")                     # 2
ipam.get_available("default/net-1")                # 97
```

An empty or `0.0.0.0` request takes the first free address. Requests outside
the pool range, for a revoked or already allocated address, or when the range
is exhausted raise `ValueError`. Revoking an address outside the range is
ignored.

## Describing an IP pool

```python
from vmdhcp.ippool_common import IPPoolBuilder

pool = (
    IPPoolBuilder("default", "net-1")
    .network_name("default/net-1")
    .cidr("192.168.0.0/24")
    .server_ip("192.168.0.2")
    .router("192.168.0.1")
    .pool_range("192.168.0.101", "192.168.0.200")
    .exclude("192.168.0.150", "192.168.0.187")
    .build()
)
```

Network references such as `"default/net-1"` are split into namespace and
name with `vmdhcp.apis.split_ref`.

## Reconciling a pool

```python
from vmdhcp.cache import CacheAllocator
from vmdhcp.ippool_controller import Handler, IPAllocator

handler = Handler(cache_allocator=CacheAllocator(), ip_allocator=IPAllocator())
status = handler.build_cache(pool, pool.status)
handler.ip_allocator.get_available("default/net-1")   # 98: two addresses excluded
```

`build_cache` sets up the pool's range, revokes the server, router and excluded
addresses, and re-allocates every address already recorded in the pool's
status. `on_change`, `deploy_agent` and `monitor_agent` work against
`ObjectStore` instances passed as `ippool_client`, `pod_client`, `pod_cache`
and `nad_cache`. Steps that cannot finish raise `ReconcileError` with a message
saying why, for example a paused pool, an agent pod that is not ready, or an
agent pod whose image is out of date (which is deleted first).

## The agent pod

`prepare_agent_pod` renders the pod that serves a pool. It is pinned to nodes
of the pool's cluster network, attaches the pool's network as `eth1`, sets the
server address on that interface in an init container, and passes
`--ippool-ref <namespace>/<name>` to the agent (plus `--dry-run` when DHCP is
disabled).

```python
from vmdhcp.config import parse_image
from vmdhcp.ippool_common import prepare_agent_pod

image = parse_image("rancher/harvester-vm-dhcp-agent:main")
pod = prepare_agent_pod(pool, False, "harvester-system", "provider", "vdca", image)
```

`parse_image` expects exactly one `repository:tag` pair and raises
`ValueError` otherwise; `prepare_agent_pod` raises `ValueError` for a CIDR it
cannot parse. Agent pod names come from `safe_agent_concat_name`, which keeps
them under 64 characters by shortening long names and appending a hash.

## The agent side

`PoolController` applies updates of its watched pool to a `LeaseStore`: it adds
a lease for every newly allocated address, removes leases whose address is gone,
and skips the `EXCLUDED` and `RESERVED` markers (see
`filter_excluded_and_reserved`). Pools whose `CacheReady` condition is not true
are left alone. `process` syncs a sequence of `Event`s, retries those that fail
with an `ApiError` up to five times, and returns the ones it dropped.

## Conditions

Status conditions are driven through `vmdhcp.apis.Cond`. An IPPool carries
`Registered`, `CacheReady`, `AgentReady` and `Stopped`; a
VirtualMachineNetworkConfig carries `Allocated` and `Disabled`. Each `Cond`
can `set_status`, `get_status`, set a `reason` and a `message`, test
`is_true`, and set itself `true` or `false`.

## What this package does not do

It is a library of models and reconcile steps, run by calling them. It has no
command-line programs, does not connect to a cluster API or watch resources
(the `ObjectStore` stands in for one in memory), does not run an HTTP server,
export metrics or take part in leader election, and does not answer DHCP
requests on the network: `LeaseStore` only records the leases an agent would
serve.