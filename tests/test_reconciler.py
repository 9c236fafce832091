import logging

import pytest

from conftest import UNCONFIGURED, UNREACHABLE, FakeChannel, in_set
from replset_ctrl.errors import (
    ConvergenceTimeoutError,
    NoPrimaryError,
    NoReachableMemberError,
    ReplsetCommandError,
    TopologyConflictError,
)
from replset_ctrl.reconciler import ReplicaSetReconciler, needs_change
from replset_ctrl.state import DesiredState, ObservedState
from replset_ctrl.topology import get_current_state

HOSTS = ["a:27017", "b:27017", "c:27017"]
NOT_PRIMARY = {'ismaster': False}


def primary(host):
    return {'ismaster': True, 'primary': host}


def secondary_of(host):
    return {'ismaster': False, 'secondary': True, 'primary': host}


def reconciler_for(channel):
    return ReplicaSetReconciler(channel, conn_string="seed:27017", retry_limit=10, retry_sleep=0)


def existing_conf(hosts):
    return {'_id': 'rs0', 'version': 4,
            'members': [{'_id': i, 'host': h, 'priority': 1, 'votes': 1} for i, h in enumerate(hosts)]}


def test_fresh_set_is_initiated_on_first_member_and_polled_until_primary():
    channel = FakeChannel(
        statuses={h: UNCONFIGURED for h in HOSTS},
        masters={'a:27017': [NOT_PRIMARY, NOT_PRIMARY, NOT_PRIMARY, primary('a:27017')]},
    )
    desired = DesiredState.from_declaration("rs0", HOSTS)

    state = reconciler_for(channel).reconcile(desired, ObservedState.absent())

    (call,) = channel.mutating_calls()
    assert call[0] == 'rs_initiate'
    assert call[1] == 'a:27017'
    assert [m['host'] for m in call[2]['members']] == HOSTS
    assert [m['_id'] for m in call[2]['members']] == [0, 1, 2]

    polls = [c for c in channel.calls[channel.calls.index(call):] if c[0] == 'is_master']
    assert all(c[1] == 'a:27017' for c in polls)
    assert len(polls) == 3

    assert state.exists is True
    assert state.name == 'rs0'
    assert [m['host'] for m in state.members] == HOSTS
    assert all(m['priority'] == 1 and m['votes'] == 1 for m in state.members)
    assert channel.calls[-1] == ('rs_conf', 'seed:27017')


def test_new_member_is_added_through_the_current_primary():
    hosts = HOSTS + ["d:27017"]
    channel = FakeChannel(
        statuses={'a:27017': in_set("rs0"), 'b:27017': in_set("rs0"), 'c:27017': in_set("rs0"),
                  'd:27017': UNCONFIGURED},
        masters={'a:27017': [secondary_of('b:27017')]},
        conf=existing_conf(HOSTS),
    )
    reconciler = reconciler_for(channel)
    observed = get_current_state(channel, "seed:27017")
    desired = DesiredState.from_declaration("rs0", hosts)

    state = reconciler.reconcile(desired, observed)

    (call,) = channel.mutating_calls()
    assert call[0] == 'rs_reconfig'
    assert call[1] == 'b:27017'
    assert [m['host'] for m in call[2]['members']] == hosts
    # no polling phase after a reconfig
    assert not [c for c in channel.calls[channel.calls.index(call):] if c[0] == 'is_master']
    assert [m['host'] for m in state.members] == hosts


def test_unreachable_member_is_left_out_of_the_config(caplog):
    channel = FakeChannel(
        statuses={'a:27017': UNCONFIGURED, 'b:27017': UNCONFIGURED, 'c:27017': UNREACHABLE},
        masters={'a:27017': [NOT_PRIMARY, primary('a:27017')]},
    )
    desired = DesiredState.from_declaration("rs0", HOSTS)

    with caplog.at_level(logging.WARNING):
        state = reconciler_for(channel).reconcile(desired, ObservedState.absent())

    (call,) = channel.mutating_calls()
    assert [m['host'] for m in call[2]['members']] == ['a:27017', 'b:27017']
    assert [m['host'] for m in state.members] == ['a:27017', 'b:27017']
    assert any("c:27017" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)


def test_foreign_member_aborts_before_any_mutation():
    channel = FakeChannel(statuses={'a:27017': UNCONFIGURED, 'b:27017': in_set("rsOther"),
                                    'c:27017': UNCONFIGURED})
    desired = DesiredState.from_declaration("rs0", HOSTS)

    with pytest.raises(TopologyConflictError) as excinfo:
        reconciler_for(channel).reconcile(desired, ObservedState.absent())

    assert excinfo.value.host == 'b:27017'
    assert channel.mutating_calls() == []


def test_all_members_unreachable_aborts():
    channel = FakeChannel()
    desired = DesiredState.from_declaration("rs0", HOSTS)

    with pytest.raises(NoReachableMemberError, match="Can't connect to any member of replicaset rs0"):
        reconciler_for(channel).reconcile(desired, ObservedState.absent())

    assert channel.mutating_calls() == []
    assert not [c for c in channel.calls if c[0] == 'is_master']


def test_reconfigure_with_identical_config_keeps_membership_and_primary():
    channel = FakeChannel(
        statuses={h: in_set("rs0") for h in HOSTS},
        masters={'a:27017': [secondary_of('b:27017')]},
        conf=existing_conf(HOSTS),
    )
    reconciler = reconciler_for(channel)
    desired = DesiredState.from_declaration("rs0", HOSTS)

    first = reconciler.reconcile(desired, get_current_state(channel))
    second = reconciler.reconcile(desired, first)

    assert first == second
    assert [c[1] for c in channel.mutating_calls()] == ['b:27017', 'b:27017']
    assert channel.mutating_calls()[0][2] == channel.mutating_calls()[1][2]
    assert not needs_change(desired, second)


def test_auth_enabled_initiates_on_the_bootstrap_host():
    channel = FakeChannel(
        statuses={h: UNCONFIGURED for h in HOSTS},
        masters={'a:27017': [NOT_PRIMARY, primary('a:27017')]},
    )
    desired = DesiredState.from_declaration("rs0", HOSTS, initialize_host="10.0.0.5:27017",
                                            auth_enabled="enabled")

    reconciler_for(channel).reconcile(desired, ObservedState.absent())

    (call,) = channel.mutating_calls()
    assert call[:2] == ('rs_initiate', '10.0.0.5:27017')


def test_declared_arbiter_is_sent_as_arbiter_only():
    channel = FakeChannel(
        statuses={h: UNCONFIGURED for h in HOSTS},
        masters={'a:27017': [NOT_PRIMARY, primary('a:27017')]},
    )
    desired = DesiredState.from_declaration("rs0", HOSTS, arbiter="c:27017")

    reconciler_for(channel).reconcile(desired, ObservedState.absent())

    members = channel.mutating_calls()[0][2]['members']
    assert [m['arbiterOnly'] for m in members] == [False, False, True]


def test_failed_initiate_reports_the_server_message():
    channel = FakeChannel(
        statuses={h: UNCONFIGURED for h in HOSTS},
        initiate_result={'ok': 0, 'errmsg': "replSetInitiate quorum check failed"},
    )
    desired = DesiredState.from_declaration("rs0", HOSTS)

    with pytest.raises(ReplsetCommandError, match="quorum check failed") as excinfo:
        reconciler_for(channel).reconcile(desired, ObservedState.absent())

    assert excinfo.value.errmsg == "replSetInitiate quorum check failed"


def test_primary_never_elected_is_a_convergence_timeout():
    channel = FakeChannel(statuses={h: UNCONFIGURED for h in HOSTS})
    desired = DesiredState.from_declaration("rs0", HOSTS)
    reconciler = ReplicaSetReconciler(channel, retry_limit=4, retry_sleep=0)

    with pytest.raises(ConvergenceTimeoutError, match="a:27017") as excinfo:
        reconciler.reconcile(desired, ObservedState.absent())

    assert excinfo.value.host == 'a:27017'
    initiate_at = channel.calls.index(channel.mutating_calls()[0])
    assert len([c for c in channel.calls[initiate_at:] if c[0] == 'is_master']) == 4


def test_poll_survives_a_host_that_is_briefly_unreachable():
    channel = FakeChannel(
        statuses={'a:27017': UNCONFIGURED},
        masters={'a:27017': [NOT_PRIMARY, UNREACHABLE, primary('a:27017')]},
    )
    desired = DesiredState.from_declaration("rs0", ["a:27017"])

    state = reconciler_for(channel).reconcile(desired, ObservedState.absent())

    assert state.exists


def test_existing_set_without_primary_cannot_be_reconfigured():
    channel = FakeChannel(statuses={h: in_set("rs0") for h in HOSTS}, conf=existing_conf(HOSTS))
    desired = DesiredState.from_declaration("rs0", HOSTS)

    with pytest.raises(NoPrimaryError, match="Can't find primary for replicaset rs0"):
        reconciler_for(channel).reconcile(desired, get_current_state(channel))

    assert channel.mutating_calls() == []


def test_failed_reconfig_reports_the_server_message():
    channel = FakeChannel(
        statuses={h: in_set("rs0") for h in HOSTS},
        masters={'a:27017': [primary('a:27017')]},
        conf=existing_conf(HOSTS),
        reconfig_result={'ok': 0, 'errmsg': "New config is rejected"},
    )
    desired = DesiredState.from_declaration("rs0", HOSTS)

    with pytest.raises(ReplsetCommandError, match="rs.reconfig\\(\\) failed for replicaset rs0: New config is rejected"):
        reconciler_for(channel).reconcile(desired, get_current_state(channel))


def test_primary_present_takes_update_branch_even_if_observed_absent():
    channel = FakeChannel(
        statuses={h: in_set("rs0") for h in HOSTS},
        masters={'a:27017': [primary('a:27017')]},
    )
    desired = DesiredState.from_declaration("rs0", HOSTS)

    reconciler_for(channel).reconcile(desired, ObservedState.absent())

    assert [c[:2] for c in channel.mutating_calls()] == [('rs_reconfig', 'a:27017')]


def test_ensure_absent_is_a_no_op():
    channel = FakeChannel(statuses={h: in_set("rs0") for h in HOSTS}, conf=existing_conf(HOSTS))
    observed = get_current_state(channel)
    channel.calls.clear()
    desired = DesiredState.from_declaration("rs0", HOSTS, ensure="absent")

    assert reconciler_for(channel).reconcile(desired, observed) is observed
    assert channel.calls == []
    assert not needs_change(desired, observed)


def test_empty_member_list_initiates_without_probing():
    channel = FakeChannel()
    desired = DesiredState.from_declaration("rs0", [])

    reconciler_for(channel).reconcile(desired, ObservedState.absent())

    (call,) = channel.mutating_calls()
    assert call[1] == desired.initialize_host
    assert call[2] == {'_id': 'rs0', 'members': []}
    assert not [c for c in channel.calls if c[0] in ('rs_status', 'is_master')]


def test_needs_change_detects_drift():
    desired = DesiredState.from_declaration("rs0", HOSTS)

    assert needs_change(desired, ObservedState.absent())
    assert needs_change(desired, ObservedState(exists=True, name="rs0", members=({'host': 'a:27017'},)))
    assert not needs_change(desired, ObservedState(exists=True, name="rs0",
                                                   members=tuple({'host': h} for h in HOSTS)))
