import pytest

from vmdhcp.apis import (
    AGENT_READY,
    CACHE_READY,
    REGISTERED,
    STOPPED,
    Cond,
    Condition,
    ConditionStatus,
    IPPool,
    IPPoolStatus,
    IPv4Status,
    NetworkConfigState,
    NetworkConfigStatus,
    ObjectMeta,
    VirtualMachineNetworkConfig,
    split_ref,
)


def make_pool():
    return IPPool(metadata=ObjectMeta(namespace="default", name="net-1"))


def test_split_ref_with_namespace():
    assert split_ref("default/net-1") == ("default", "net-1")


def test_split_ref_without_slash():
    assert split_ref("you-cant-find-me") == ("", "you-cant-find-me")


def test_split_ref_uses_last_slash():
    assert split_ref("a/b/c") == ("a/b", "c")


def test_set_status_on_resource():
    pool = make_pool()
    REGISTERED.set_status(pool, ConditionStatus.TRUE)
    assert REGISTERED.get_status(pool) == "True"
    assert REGISTERED.is_true(pool)
    assert pool.status.conditions[0].type == "Registered"


def test_set_status_on_status_object():
    status = IPPoolStatus()
    CACHE_READY.true(status)
    assert CACHE_READY.is_true(status)
    assert len(status.conditions) == 1


def test_missing_condition_reads_empty():
    pool = make_pool()
    assert AGENT_READY.get_status(pool) == ""
    assert not AGENT_READY.is_true(pool)
    assert pool.status.conditions == []


def test_conditions_keep_creation_order():
    pool = make_pool()
    STOPPED.false(pool)
    CACHE_READY.false(pool)
    CACHE_READY.reason(pool, "NotInitialized")
    assert [c.type for c in pool.status.conditions] == ["Stopped", "CacheReady"]
    assert pool.status.conditions[1].reason == "NotInitialized"
    assert CACHE_READY.get_status(pool) == "False"


def test_reason_and_message_create_condition():
    pool = make_pool()
    AGENT_READY.message(pool, "agent pod missing")
    condition = pool.status.conditions[0]
    assert condition.type == "AgentReady"
    assert condition.message == "agent pod missing"
    assert condition.status == ""


def test_update_time_set_when_value_changes():
    pool = make_pool()
    STOPPED.true(pool)
    assert pool.status.conditions[0].last_update_time.endswith("Z")


def test_status_flip_does_not_duplicate():
    pool = make_pool()
    STOPPED.true(pool)
    STOPPED.false(pool)
    assert len(pool.status.conditions) == 1
    assert STOPPED.get_status(pool) == "False"


def test_object_without_conditions_rejected():
    with pytest.raises(TypeError):
        Cond("Registered").true(Condition(type="x"))


def test_str_status_accepted():
    status = IPPoolStatus()
    REGISTERED.set_status(status, "False")
    assert REGISTERED.get_status(status) == ConditionStatus.FALSE.value


def test_pool_identity_properties():
    pool = make_pool()
    assert (pool.namespace, pool.name) == ("default", "net-1")


def test_deepcopy_is_independent():
    pool = make_pool()
    pool.status.ipv4 = IPv4Status(allocated={"192.168.0.111": "11:22:33:44:55:66"})
    clone = pool.deepcopy()
    assert clone == pool
    clone.status.ipv4.allocated["192.168.0.177"] = "22:33:44:55:66:77"
    assert clone != pool
    assert "192.168.0.177" not in pool.status.ipv4.allocated


def test_network_config_state_matches_strings():
    status = NetworkConfigStatus(state=NetworkConfigState.PENDING)
    assert status.state == "Pending"
    assert NetworkConfigState.ALLOCATED == "Allocated"


def test_vmnetcfg_conditions():
    cfg = VirtualMachineNetworkConfig(metadata=ObjectMeta(namespace="default", name="test-vm"))
    Cond("Disabled").true(cfg)
    assert Cond("Disabled").is_true(cfg)
    assert cfg.name == "test-vm"