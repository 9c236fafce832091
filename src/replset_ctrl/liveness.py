import logging

from replset_ctrl.channel import AUTHENTICATION_FAILED, NOT_YET_INITIALIZED, UNAUTHORIZED
from replset_ctrl.errors import CommandExecutionError, TopologyConflictError
from replset_ctrl.state import Liveness, auth_is_enabled

NO_REPLICATION_ENABLED = 76
UNAUTHORIZED_MESSAGES = ('unauthorized', 'not authorized', 'requires authentication', 'authentication failed')


def is_unauthorized(status):
    if status.get('code') in (UNAUTHORIZED, AUTHENTICATION_FAILED):
        return True
    errmsg = str(status.get('errmsg', '')).lower()
    return any(msg in errmsg for msg in UNAUTHORIZED_MESSAGES)


def is_not_replicated(status):
    return (status.get('code') == NO_REPLICATION_ENABLED
            or 'not running with --replSet' in str(status.get('errmsg', '')))


def classify_member(channel, member, set_name, auth_enabled='disabled'):
    """
    Work out whether a declared member can take part in replicaset set_name.

    Raises TopologyConflictError when the host can never be part of the set:
    it runs without replication, or it already belongs to another replicaset.
    """
    logger = logging.getLogger(__name__)
    host = member['host']

    logger.debug(f"Checking replicaset member {host} ...")
    try:
        status = channel.rs_status(host)
    except CommandExecutionError as e:
        logger.debug(f"Status of {host} unavailable: ({e})")
        return Liveness.DEAD

    if is_not_replicated(status):
        raise TopologyConflictError(
            f"Can't configure replicaset {set_name}, host {host} is not supposed to be part of a replicaset.", host)

    if 'set' in status:
        if status['set'] != set_name:
            raise TopologyConflictError(
                f"Can't configure replicaset {set_name}, host {host} is already part of another replicaset "
                f"({status['set']}).", host, Liveness.ALIVE_FOREIGN)
        logger.debug(f"Host {host} is available for replset {status['set']}")
        return Liveness.ALIVE_IN_SET

    if is_unauthorized(status):
        if auth_is_enabled(auth_enabled):
            logger.warning(f"Host {host} is available, but you are unauthorized because authentication "
                           f"is enabled: {auth_enabled}")
            return Liveness.ALIVE_UNAUTHORIZED
        logger.debug(f"Host {host} refused status without authentication enabled: {status.get('errmsg')}")
        return Liveness.DEAD

    if 'info' in status or status.get('code') == NOT_YET_INITIALIZED:
        logger.debug(f"Host {host} is alive but unconfigured: {status.get('info', status.get('errmsg'))}")
        return Liveness.ALIVE_UNCONFIGURED

    logger.debug(f"Host {host} returned an unexpected status: {status}")
    return Liveness.DEAD


def probe_members(channel, candidates, set_name, auth_enabled='disabled'):
    """
    Split declared members into alive and dead, keeping declaration order.

    :param candidates: normalized member dicts.
    :return: (alive, dead) lists of member dicts.
    """
    logger = logging.getLogger(__name__)

    alive = []
    dead = []
    for member in candidates:
        if classify_member(channel, member, set_name, auth_enabled).is_alive:
            alive.append(member)
        else:
            logger.warning(f"Can't connect to replicaset member {member['host']}.")
            dead.append(member)

    logger.debug(f"Alive members: {[m['host'] for m in alive]}")
    if dead:
        logger.debug(f"Dead members: {[m['host'] for m in dead]}")
    return alive, dead
