import logging

from replset_ctrl.errors import CommandExecutionError
from replset_ctrl.members import MEMBER_FIELDS
from replset_ctrl.state import ObservedState


def project_member(conf_member):
    """Reduce a member of the live config to the canonical member fields."""
    return {field: conf_member.get(field) for field in MEMBER_FIELDS}


def get_current_state(channel, conn_string=None):
    """
    Inspect the live replicaset configuration.

    The query goes to the channel's seed connection (conn_string or the
    channel default), letting the driver find a member to answer. Any failure
    means there is no replicaset yet.

    :return: a fresh ObservedState.
    """
    logger = logging.getLogger(__name__)

    try:
        config = channel.rs_conf(conn_string)
    except CommandExecutionError as e:
        logger.debug(f"No pre-existing replicaSet configuration found ({e})")
        return ObservedState.absent()

    if not config.get('members'):
        logger.debug("No pre-existing replicaSet configuration found: {}".format(config.get('errmsg', config)))
        return ObservedState.absent()

    members = tuple(project_member(m) for m in config['members'])
    logger.info("Pre-existing replicaSet {} found with members: {}".format(
        config.get('_id'), [m['host'] for m in members]))
    return ObservedState(exists=True, name=config.get('_id'), members=members)


def find_master_host(channel, members):
    """
    Ask each member, in order, who the primary is.

    :param members: member dicts (only 'host' is used).
    :return: the first reported primary 'host:port', or None.
    """
    logger = logging.getLogger(__name__)

    for member in members:
        host = member['host']
        logger.debug("Checking {} for primary...".format(host))
        try:
            status = channel.is_master(host)
        except CommandExecutionError as e:
            logger.debug("Cannot connect to {} to check for primary: ({})".format(host, e))
            continue

        if status.get('primary'):
            logger.info("--> Mongo ReplicaSet PRIMARY is: {} <--".format(status['primary']))
            return status['primary']

    logger.info("No PRIMARY found among {} members.".format(len(members)))
    return None
