import pytest

from vmdhcp.apis import GROUP_NAME, ConditionStatus
from vmdhcp.cache import CacheAllocator, CacheAllocatorBuilder
from vmdhcp.config import Image
from vmdhcp.ippool_common import (
    CLUSTER_NETWORK_LABEL_KEY,
    EXCLUDED_MARK,
    HOLD_IPPOOL_AGENT_UPGRADE_ANNOTATION_KEY,
    RESERVED_MARK,
    IPPoolBuilder,
    IPPoolStatusBuilder,
    NetworkAttachmentDefinitionBuilder,
    PodBuilder,
    prepare_agent_pod,
    safe_agent_concat_name,
    sanitize_status,
)
from vmdhcp.ippool_controller import (
    Handler,
    IPAllocator,
    MetricsRecorder,
    ReconcileError,
    is_pod_ready,
)
from vmdhcp.kube import NotFoundError, ObjectStore

NAD_NAMESPACE = "default"
NAD_NAME = "net-1"
NAD_NAME_LONG = "fi6cx9ca1kt1faq80k3ro9cowyumyjb67qdmg8fb9ydmz27rbk5btlg2m5avv3n"
POOL_NAMESPACE = NAD_NAMESPACE
POOL_NAME = NAD_NAME
KEY = f"{POOL_NAMESPACE}/{POOL_NAME}"
POD_NAMESPACE = "harvester-system"
POD_NAME = f"{NAD_NAMESPACE}-{NAD_NAME}-agent"
POD_NAME_LONG = safe_agent_concat_name(NAD_NAMESPACE, NAD_NAME_LONG)
UID = "3a955369-9eaa-43db-94f3-9153289d7dc2"
CLUSTER_NETWORK = "provider"
SERVER_IP = "192.168.0.2"
NETWORK_NAME = f"{NAD_NAMESPACE}/{NAD_NAME}"
NETWORK_NAME_LONG = f"{NAD_NAMESPACE}/{NAD_NAME_LONG}"
CIDR = "192.168.0.0/24"
START_IP = "192.168.0.101"
END_IP = "192.168.0.200"
SERVICE_ACCOUNT = "vdca"
IMAGE_REPO = "rancher/harvester-vm-dhcp-agent"
IMAGE_TAG = "main"
IMAGE_TAG_NEW = "dev"
IMAGE = f"{IMAGE_REPO}:{IMAGE_TAG}"
IMAGE_NEW = f"{IMAGE_REPO}:{IMAGE_TAG_NEW}"
CONTAINER_NAME = "agent"
EXCLUDED_IP1 = "192.168.0.150"
EXCLUDED_IP2 = "192.168.0.187"
ALLOCATED_IP1 = "192.168.0.111"
ALLOCATED_IP2 = "192.168.0.177"
MAC1 = "02:00:00:00:00:01"
MAC2 = "02:00:00:00:00:02"


def pool_builder():
    return IPPoolBuilder(POOL_NAMESPACE, POOL_NAME)


def pod_builder():
    return PodBuilder(POD_NAMESPACE, POD_NAME)


def ippool_store(*objs):
    return ObjectStore("ippools", GROUP_NAME, objs)


def pod_store(*objs):
    return ObjectStore("pods", "", objs)


def nad_store(*objs):
    return ObjectStore("network-attachment-definitions", "k8s.cni.cncf.io", objs)


def subnet_allocator():
    allocator = IPAllocator()
    allocator.new_ip_subnet(NETWORK_NAME, CIDR, START_IP, END_IP)
    return allocator


def given_nad(name=NAD_NAME):
    return NetworkAttachmentDefinitionBuilder(NAD_NAMESPACE, name).label(
        CLUSTER_NETWORK_LABEL_KEY, CLUSTER_NETWORK
    ).build()


def agent_pod(pool_name=POOL_NAME, network_name=NETWORK_NAME):
    return prepare_agent_pod(
        IPPoolBuilder(POOL_NAMESPACE, pool_name).server_ip(SERVER_IP).cidr(CIDR)
        .network_name(network_name).build(),
        False, POD_NAMESPACE, CLUSTER_NETWORK, SERVICE_ACCOUNT, Image(IMAGE_REPO, IMAGE_TAG),
    )


def deploy_handler(nads, pods, tag=IMAGE_TAG):
    return Handler(
        agent_namespace=POD_NAMESPACE,
        agent_image=Image(IMAGE_REPO, tag),
        agent_service_account_name=SERVICE_ACCOUNT,
        nad_cache=nads,
        pod_client=pods,
        pod_cache=pods,
    )


def test_on_change_new_ippool():
    given = pool_builder().build()
    expected = pool_builder().stopped_condition(ConditionStatus.FALSE, "", "") \
        .cache_ready_condition(ConditionStatus.FALSE, "NotInitialized", "").build()
    handler = Handler(agent_namespace="default", agent_image=Image("repo", "main"),
                      ip_allocator=IPAllocator(), ippool_client=ippool_store(given))
    result = handler.on_change(KEY, given)
    sanitize_status(expected.status)
    sanitize_status(result.status)
    assert result == expected


def test_on_change_ipam_initialized():
    given = pool_builder().server_ip(SERVER_IP).cidr(CIDR).pool_range(START_IP, END_IP) \
        .network_name(NETWORK_NAME).cache_ready_condition(ConditionStatus.TRUE, "", "").build()
    expected = pool_builder().server_ip(SERVER_IP).cidr(CIDR).pool_range(START_IP, END_IP) \
        .network_name(NETWORK_NAME).available(100).used(0) \
        .cache_ready_condition(ConditionStatus.TRUE, "", "") \
        .stopped_condition(ConditionStatus.FALSE, "", "").build()
    metrics = MetricsRecorder()
    handler = Handler(ip_allocator=subnet_allocator(), metrics_allocator=metrics,
                      ippool_client=ippool_store(given))
    result = handler.on_change(KEY, given)
    sanitize_status(expected.status)
    sanitize_status(result.status)
    assert result == expected
    assert metrics.ippool_used[(KEY, CIDR, NETWORK_NAME)] == 0
    assert metrics.ippool_available[(KEY, CIDR, NETWORK_NAME)] == 100


def test_on_change_marks_reserved_and_excluded():
    given = pool_builder().server_ip("192.168.0.150").cidr(CIDR).pool_range(START_IP, END_IP) \
        .exclude("192.168.0.160").network_name(NETWORK_NAME) \
        .cache_ready_condition(ConditionStatus.TRUE, "", "").build()
    handler = Handler(ip_allocator=subnet_allocator(), metrics_allocator=MetricsRecorder(),
                      ippool_client=ippool_store(given))
    result = handler.on_change(KEY, given)
    assert result.status.ipv4.allocated == {
        "192.168.0.150": RESERVED_MARK,
        "192.168.0.160": EXCLUDED_MARK,
    }
    assert result.status.last_update is not None


def test_on_change_pause_ippool():
    given = pool_builder().network_name(NETWORK_NAME).paused() \
        .agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    expected = pool_builder().network_name(NETWORK_NAME).paused() \
        .stopped_condition(ConditionStatus.TRUE, "", "").build()
    pods = pod_store(pod_builder().build())
    handler = Handler(ip_allocator=subnet_allocator(), cache_allocator=CacheAllocator(),
                      metrics_allocator=MetricsRecorder(), ippool_client=ippool_store(given),
                      pod_client=pods)
    result = handler.on_change(KEY, given)
    sanitize_status(expected.status)
    sanitize_status(result.status)
    assert result == expected
    assert handler.ip_allocator == IPAllocator()
    with pytest.raises(NotFoundError) as excinfo:
        pods.get(POD_NAMESPACE, POD_NAME)
    assert str(excinfo.value) == f'pods "{POD_NAME}" not found'


def test_on_change_resume_ippool():
    given = pool_builder().network_name(NETWORK_NAME).unpaused() \
        .cache_ready_condition(ConditionStatus.TRUE, "", "").build()
    expected = pool_builder().network_name(NETWORK_NAME).unpaused().available(100).used(0) \
        .cache_ready_condition(ConditionStatus.TRUE, "", "") \
        .stopped_condition(ConditionStatus.FALSE, "", "").build()
    handler = Handler(ip_allocator=subnet_allocator(), metrics_allocator=MetricsRecorder(),
                      ippool_client=ippool_store(given))
    result = handler.on_change(KEY, given)
    sanitize_status(expected.status)
    sanitize_status(result.status)
    assert result == expected


def test_on_change_none():
    assert Handler().on_change(KEY, None) is None


def test_on_remove_no_agent_keeps_pod():
    given = pool_builder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    pods = pod_store(pod_builder().build())
    handler = Handler(no_agent=True, pod_client=pods)
    assert handler.on_remove(KEY, given) is given
    assert pods.get(POD_NAMESPACE, POD_NAME).name == POD_NAME


def test_deploy_agent_ippool_created():
    given = pool_builder().server_ip(SERVER_IP).cidr(CIDR).network_name(NETWORK_NAME).build()
    expected_status = IPPoolStatusBuilder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    handler = deploy_handler(nad_store(given_nad()), pod_store())
    status = handler.deploy_agent(given, given.status)
    assert status == expected_status
    assert handler.pod_client.get(POD_NAMESPACE, POD_NAME) == agent_pod()


def test_deploy_agent_ippool_paused():
    given = pool_builder().paused().build()
    handler = deploy_handler(None, None)
    with pytest.raises(ReconcileError) as excinfo:
        handler.deploy_agent(given, given.status)
    assert str(excinfo.value) == f"ippool {KEY} was administratively disabled"


def test_deploy_agent_nad_not_found():
    given = pool_builder().network_name("you-cant-find-me").build()
    handler = Handler(nad_cache=nad_store(given_nad()))
    with pytest.raises(NotFoundError) as excinfo:
        handler.deploy_agent(given, given.status)
    assert str(excinfo.value) == \
        'network-attachment-definitions.k8s.cni.cncf.io "you-cant-find-me" not found'


def test_deploy_agent_nad_without_cluster_network():
    given = pool_builder().network_name(NETWORK_NAME).build()
    nad = NetworkAttachmentDefinitionBuilder(NAD_NAMESPACE, NAD_NAME).build()
    handler = deploy_handler(nad_store(nad), pod_store())
    with pytest.raises(ReconcileError, match="could not find clusternetwork"):
        handler.deploy_agent(given, given.status)


def test_deploy_agent_pod_already_exists():
    given = pool_builder().server_ip(SERVER_IP).cidr(CIDR).network_name(NETWORK_NAME) \
        .agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    expected_status = IPPoolStatusBuilder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    handler = deploy_handler(nad_store(given_nad()), pod_store(agent_pod()))
    status = handler.deploy_agent(given, given.status)
    assert status == expected_status
    assert handler.pod_client.get(POD_NAMESPACE, POD_NAME) == agent_pod()


def test_deploy_agent_very_long_name():
    given = IPPoolBuilder(POOL_NAMESPACE, NAD_NAME_LONG).server_ip(SERVER_IP).cidr(CIDR) \
        .network_name(NETWORK_NAME_LONG).build()
    expected_status = IPPoolStatusBuilder().agent_pod_ref(
        POD_NAMESPACE, POD_NAME_LONG, IMAGE, "").build()
    handler = deploy_handler(nad_store(given_nad(NAD_NAME_LONG)), pod_store())
    status = handler.deploy_agent(given, given.status)
    assert status == expected_status
    assert handler.pod_client.get(POD_NAMESPACE, POD_NAME_LONG) == \
        agent_pod(NAD_NAME_LONG, NETWORK_NAME_LONG)


def test_deploy_agent_upgrade():
    given = pool_builder().server_ip(SERVER_IP).cidr(CIDR).network_name(NETWORK_NAME) \
        .agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    expected_status = IPPoolStatusBuilder().agent_pod_ref(
        POD_NAMESPACE, POD_NAME, IMAGE_NEW, "").build()
    handler = deploy_handler(nad_store(given_nad()), pod_store(agent_pod()), IMAGE_TAG_NEW)
    assert handler.deploy_agent(given, given.status) == expected_status


def test_deploy_agent_upgrade_held_back():
    given = pool_builder().annotation(HOLD_IPPOOL_AGENT_UPGRADE_ANNOTATION_KEY, "true") \
        .server_ip(SERVER_IP).cidr(CIDR).network_name(NETWORK_NAME) \
        .agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    expected_status = IPPoolStatusBuilder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    handler = deploy_handler(nad_store(given_nad()), pod_store(agent_pod()), IMAGE_TAG_NEW)
    assert handler.deploy_agent(given, given.status) == expected_status


def test_deploy_agent_uid_mismatch():
    given = pool_builder().server_ip(SERVER_IP).cidr(CIDR).network_name(NETWORK_NAME) \
        .agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, UID).build()
    handler = deploy_handler(nad_store(given_nad()), pod_store(agent_pod()), IMAGE_TAG_NEW)
    with pytest.raises(ReconcileError) as excinfo:
        handler.deploy_agent(given, given.status)
    assert str(excinfo.value) == f"agent pod {POD_NAME} uid mismatch"


def test_build_cache_new_ippool():
    given = pool_builder().cidr(CIDR).pool_range(START_IP, END_IP).network_name(NETWORK_NAME).build()
    handler = Handler(cache_allocator=CacheAllocator(), ip_allocator=IPAllocator())
    handler.build_cache(given, given.status)
    assert handler.ip_allocator == subnet_allocator()
    assert handler.cache_allocator == CacheAllocatorBuilder().mac_set(NETWORK_NAME).build()


def test_build_cache_paused():
    given = pool_builder().paused().build()
    with pytest.raises(ReconcileError) as excinfo:
        Handler().build_cache(given, given.status)
    assert str(excinfo.value) == f"ippool {KEY} was administratively disabled"


def test_build_cache_already_ready():
    given = pool_builder().cache_ready_condition(ConditionStatus.TRUE, "", "").build()
    expected = IPPoolStatusBuilder().cache_ready_condition(ConditionStatus.TRUE, "", "").build()
    status = Handler().build_cache(given, given.status)
    sanitize_status(expected)
    sanitize_status(status)
    assert status == expected


def test_build_cache_with_excluded_ips():
    given = pool_builder().cidr(CIDR).pool_range(START_IP, END_IP) \
        .exclude(EXCLUDED_IP1, EXCLUDED_IP2).network_name(NETWORK_NAME).build()
    expected = subnet_allocator()
    expected.revoke_ip(NETWORK_NAME, EXCLUDED_IP1)
    expected.revoke_ip(NETWORK_NAME, EXCLUDED_IP2)
    handler = Handler(cache_allocator=CacheAllocator(), ip_allocator=IPAllocator())
    handler.build_cache(given, given.status)
    assert handler.ip_allocator == expected
    assert handler.ip_allocator.get_available(NETWORK_NAME) == 98
    assert handler.cache_allocator == CacheAllocatorBuilder().mac_set(NETWORK_NAME).build()


def test_build_cache_rebuild():
    given = pool_builder().cidr(CIDR).pool_range(START_IP, END_IP) \
        .exclude(EXCLUDED_IP1, EXCLUDED_IP2).network_name(NETWORK_NAME) \
        .allocated(ALLOCATED_IP1, MAC1).allocated(ALLOCATED_IP2, MAC2).build()
    expected = subnet_allocator()
    for ip in (EXCLUDED_IP1, EXCLUDED_IP2):
        expected.revoke_ip(NETWORK_NAME, ip)
    for ip in (ALLOCATED_IP1, ALLOCATED_IP2):
        expected.allocate_ip(NETWORK_NAME, ip)
    expected_cache = CacheAllocatorBuilder().mac_set(NETWORK_NAME) \
        .add(NETWORK_NAME, MAC1, ALLOCATED_IP1).add(NETWORK_NAME, MAC2, ALLOCATED_IP2).build()
    handler = Handler(cache_allocator=CacheAllocator(), ip_allocator=IPAllocator())
    handler.build_cache(given, given.status)
    assert handler.ip_allocator == expected
    assert handler.cache_allocator == expected_cache


def test_monitor_agent_pod_not_found():
    given = pool_builder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    handler = Handler(pod_cache=pod_store(PodBuilder("default", "nginx").build()))
    with pytest.raises(NotFoundError) as excinfo:
        handler.monitor_agent(given, given.status)
    assert str(excinfo.value) == f'pods "{POD_NAME}" not found'


def test_monitor_agent_pod_unready():
    given = pool_builder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    pod = pod_builder().container(CONTAINER_NAME, IMAGE_REPO, IMAGE_TAG).build()
    handler = Handler(pod_cache=pod_store(pod))
    with pytest.raises(ReconcileError) as excinfo:
        handler.monitor_agent(given, given.status)
    assert str(excinfo.value) == f"agent pod {POD_NAME} not ready"


def test_monitor_agent_pod_ready():
    given = pool_builder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE, "").build()
    pod = pod_builder().container(CONTAINER_NAME, IMAGE_REPO, IMAGE_TAG) \
        .pod_ready(ConditionStatus.TRUE).build()
    handler = Handler(pod_cache=pod_store(pod))
    assert handler.monitor_agent(given, given.status) == given.status


def test_monitor_agent_paused():
    given = pool_builder().paused().build()
    with pytest.raises(ReconcileError) as excinfo:
        Handler().monitor_agent(given, given.status)
    assert str(excinfo.value) == f"ippool {KEY} was administratively disabled"


def test_monitor_agent_no_agent_mode():
    given = pool_builder().build()
    assert Handler(no_agent=True).monitor_agent(given, given.status) == given.status


def test_monitor_agent_ref_not_set():
    given = pool_builder().build()
    with pytest.raises(ReconcileError) as excinfo:
        Handler().monitor_agent(given, given.status)
    assert str(excinfo.value) == f"agent for ippool {KEY} is not deployed"


def test_monitor_agent_outdated_pod():
    given = pool_builder().agent_pod_ref(POD_NAMESPACE, POD_NAME, IMAGE_NEW, "").build()
    pod = pod_builder().container(CONTAINER_NAME, IMAGE_REPO, IMAGE_TAG) \
        .pod_ready(ConditionStatus.TRUE).build()
    pods = pod_store(pod)
    handler = Handler(pod_client=pods, pod_cache=pods)
    with pytest.raises(ReconcileError) as excinfo:
        handler.monitor_agent(given, given.status)
    assert str(excinfo.value) == f"agent pod {POD_NAME} obsolete and purged"
    with pytest.raises(NotFoundError) as excinfo:
        pods.get(POD_NAMESPACE, POD_NAME)
    assert str(excinfo.value) == f'pods "{POD_NAME}" not found'


def test_is_pod_ready():
    assert is_pod_ready(pod_builder().pod_ready(ConditionStatus.TRUE).build()) is True
    assert is_pod_ready(pod_builder().build()) is False


def test_ip_allocator_auto_allocation_skips_revoked():
    allocator = subnet_allocator()
    allocator.revoke_ip(NETWORK_NAME, START_IP)
    assert allocator.allocate_ip(NETWORK_NAME, "0.0.0.0") == "192.168.0.102"
    assert allocator.get_used(NETWORK_NAME) == 1
    assert allocator.get_available(NETWORK_NAME) == 98


def test_ip_allocator_errors_and_deallocation():
    allocator = subnet_allocator()
    assert allocator.allocate_ip(NETWORK_NAME, ALLOCATED_IP1) == ALLOCATED_IP1
    with pytest.raises(ValueError, match="already allocated"):
        allocator.allocate_ip(NETWORK_NAME, ALLOCATED_IP1)
    with pytest.raises(ValueError, match="not in the pool range"):
        allocator.allocate_ip(NETWORK_NAME, "192.168.0.5")
    assert allocator.is_allocated(NETWORK_NAME, ALLOCATED_IP1) is True
    allocator.deallocate_ip(NETWORK_NAME, ALLOCATED_IP1)
    assert allocator.is_allocated(NETWORK_NAME, ALLOCATED_IP1) is False
    with pytest.raises(LookupError, match="network other does not exist"):
        allocator.get_used("other")


def test_ip_allocator_exhaustion():
    allocator = IPAllocator()
    allocator.new_ip_subnet("n", "10.0.0.0/30", "10.0.0.1", "10.0.0.2")
    assert allocator.allocate_ip("n", "") == "10.0.0.1"
    assert allocator.allocate_ip("n", "") == "10.0.0.2"
    with pytest.raises(ValueError, match="no more ip addresses"):
        allocator.allocate_ip("n", "")


def test_metrics_delete_vmnetcfg_status():
    metrics = MetricsRecorder()
    metrics.update_vmnetcfg_status("a/b", NETWORK_NAME, MAC1, ALLOCATED_IP1, "Allocated")
    metrics.update_vmnetcfg_status("a/c", NETWORK_NAME, MAC2, ALLOCATED_IP2, "Allocated")
    metrics.delete_vmnetcfg_status("a/b")
    assert list(metrics.vmnetcfg_status) == [
        ("a/c", NETWORK_NAME, MAC2, ALLOCATED_IP2, "Allocated")
    ]