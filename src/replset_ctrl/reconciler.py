import logging

import backoff

from replset_ctrl.errors import (
    CommandExecutionError,
    ConvergenceTimeoutError,
    NoPrimaryError,
    NoReachableMemberError,
    ReplsetCommandError,
)
from replset_ctrl.liveness import probe_members
from replset_ctrl.replconf import build_config, members_in_sync
from replset_ctrl.topology import find_master_host, get_current_state


def needs_change(desired, observed):
    """Tell whether the live replicaset has drifted away from the declaration."""
    if desired.ensure == 'absent':
        # member removal is not supported, nothing to converge towards
        return False
    if not observed.exists:
        return True
    return not members_in_sync(desired.members, observed.members, desired.arbiter)


class ReplicaSetReconciler:
    """
    Converge a replicaset to its declared member list.

    A set that does not exist yet (and has no primary among the reachable
    members) is initiated, then polled until the first member becomes primary.
    Any other set is reconfigured through its current primary.
    """

    def __init__(self, channel, conn_string=None, retry_limit=10, retry_sleep=3):
        self.channel = channel
        self.conn_string = conn_string
        self.retry_limit = retry_limit
        self.retry_sleep = retry_sleep

    def reconcile(self, desired, observed):
        """
        Run one reconciliation pass.

        :param desired: DesiredState.
        :param observed: ObservedState from the previous inspection.
        :return: freshly inspected ObservedState.
        """
        logger = logging.getLogger(__name__)

        if desired.ensure == 'absent':
            # TODO: design a member removal protocol (rs.remove() through the primary); unimplemented
            logger.info(f"Removal of replicaset {desired.name} is not supported - leaving it untouched")
            return observed

        if desired.members:
            # Find the alive members so we don't try to add dead members to the replset
            alive, dead = probe_members(self.channel, desired.members, desired.name, desired.auth_enabled)
            if dead:
                logger.warning("Dead members left out of replicaset {}: {}".format(
                    desired.name, [m['host'] for m in dead]))
            if not alive:
                raise NoReachableMemberError(f"Can't connect to any member of replicaset {desired.name}.")
        else:
            alive = []

        master = find_master_host(self.channel, alive)

        if not observed.exists and master is None:
            self.initiate(desired, alive)
        else:
            self.reconfigure(desired, alive, master)

        return get_current_state(self.channel, self.conn_string)

    def initiate(self, desired, alive):
        logger = logging.getLogger(__name__)
        logger.info(f"=== Initializing the ReplicaSet {desired.name} ===")

        conf = build_config(desired.name, alive, desired.arbiter)
        logger.debug("Initial config built: {}".format(conf))

        if desired.auth:
            target = desired.initialize_host
        else:
            target = alive[0]['host'] if alive else desired.initialize_host

        res = self.channel.rs_initiate(conf, target)
        logger.info("Creating initial ReplicaSet on {} - result: {}".format(target, res))
        if res.get('ok') == 0:
            raise ReplsetCommandError(
                f"rs.initiate() failed for replicaset {desired.name}: {res.get('errmsg')}", res.get('errmsg'))

        if not alive:
            return
        # Check that the replicaset has finished initialization
        if not self.wait_for_primary(alive[0]['host']):
            raise ConvergenceTimeoutError(
                f"rs.initiate() failed for replicaset {desired.name}: host {alive[0]['host']} didn't become primary",
                alive[0]['host'])
        logger.info("Replica set initialization has successfully ended")

    def reconfigure(self, desired, alive, master):
        logger = logging.getLogger(__name__)
        logger.info(f"Updating existing ReplicaSet {desired.name}")

        if master is None:
            raise NoPrimaryError(f"Can't find primary for replicaset {desired.name}.")

        conf = build_config(desired.name, alive, desired.arbiter)
        logger.debug("Config Update - Built updated config: {}".format(conf))

        res = self.channel.rs_reconfig(conf, master)
        logger.info("Config Update - Applied updated config through PRIMARY {} - result: {}".format(master, res))
        if res.get('ok') == 0:
            raise ReplsetCommandError(
                f"rs.reconfig() failed for replicaset {desired.name}: {res.get('errmsg')}", res.get('errmsg'))

    def wait_for_primary(self, host):
        """
        Poll host until it reports itself primary, with a fixed delay.

        :return: True once host is primary, False when the attempts ran out.
        """
        logger = logging.getLogger(__name__)
        attempt = 0

        def is_primary():
            nonlocal attempt
            attempt += 1
            try:
                status = self.channel.is_master(host)
            except CommandExecutionError as e:
                logger.info(f"Attempt {attempt}/{self.retry_limit}: Waiting for replica set stabilization - {e}")
                return False
            if status.get('ismaster') or status.get('isWritablePrimary'):
                return True
            logger.info(f"Attempt {attempt}/{self.retry_limit}: Waiting for {host} to become PRIMARY...")
            return False

        poll = backoff.on_predicate(backoff.constant, interval=self.retry_sleep, jitter=None,
                                    max_tries=max(self.retry_limit, 1))(is_primary)
        return bool(poll())
