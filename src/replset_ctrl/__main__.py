"""
MongoDB ReplicaSet membership controller

DESCRIPTION:
    Converges a live MongoDB replica set to a declared member list.
    Initiates a brand-new set, or reconfigures an existing one through its primary.

USAGE:
    Configure via environment variables (see replset_ctrl.settings) and run
    `mongodb-replset-ctrl` (or `python -m replset_ctrl`).
    WATCH_INTERVAL > 0 keeps the controller running and re-converges on drift.
"""

import logging
import sys
import time

import docker

from replset_ctrl.channel import build_channel
from replset_ctrl.errors import ReplsetError
from replset_ctrl.logs import configure_logging
from replset_ctrl.reconciler import ReplicaSetReconciler, needs_change
from replset_ctrl.settings import desired_state_from_settings, get_env_settings
from replset_ctrl.topology import get_current_state


def converge(reconciler, desired, observed):
    """Reconcile when the live set drifted from the declaration, return the state to compare against next."""
    logger = logging.getLogger(__name__)

    if not needs_change(desired, observed):
        logger.info(f"ReplicaSet {desired.name} matches the declared members - nothing to do")
        return observed

    observed = reconciler.reconcile(desired, observed)
    logger.info("ReplicaSet {} members are now: {}".format(desired.name, [m['host'] for m in observed.members]))
    return observed


def manage_replica(reconciler, desired, watch_interval=0, sleep=time.sleep):
    """
    Converge the replicaset once, then keep watching it when watch_interval is set.

    :param reconciler: ReplicaSetReconciler bound to a command channel.
    :param desired: DesiredState.
    :param watch_interval: seconds between drift checks, 0 for a single pass.
    :return: the last observed state.
    """
    logger = logging.getLogger(__name__)
    channel, conn_string = reconciler.channel, reconciler.conn_string

    observed = converge(reconciler, desired, get_current_state(channel, conn_string))

    while watch_interval > 0:
        sleep(watch_interval)
        current = get_current_state(channel, conn_string)
        if current != observed:
            logger.info("Detected change in ReplicaSet configuration - re-checking members...")
        observed = converge(reconciler, desired, current)

    return observed


def main(environ=None):
    logger = logging.getLogger(__name__)

    try:
        settings = get_env_settings(environ)
    except ReplsetError as e:
        configure_logging()
        logger.error(str(e))
        return 1

    configure_logging(settings['debug'])

    try:
        desired = desired_state_from_settings(settings)
        channel = build_channel(settings)
        reconciler = ReplicaSetReconciler(channel, conn_string=settings['mongo_conn_string'])
        manage_replica(reconciler, desired, settings['watch_interval'])
    except ReplsetError as e:
        logger.error(f"ReplicaSet {settings['replicaset_name']} could not be converged: {e}")
        return 1
    except docker.errors.DockerException as e:
        logger.error(f"An error occurred with Docker: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
