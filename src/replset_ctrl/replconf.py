import logging


def build_config(name, members, arbiter=None):
    """
    Build the replica set configuration document from alive members.

    Members get a zero-based '_id' equal to their position. The declared arbiter
    is always flagged arbiterOnly, and fields without a value are left off.

    :param name: replicaset name, used as the document '_id'.
    :param members: normalized member dicts, in declaration order.
    :param arbiter: host of the declared arbiter, if any.
    :return: dict ready to be passed to replSetInitiate / replSetReconfig.
    """
    logger = logging.getLogger(__name__)

    conf_members = []
    for i, member in enumerate(members):
        conf_member = {'_id': i}
        conf_member.update(member)
        if arbiter and conf_member.get('host') == arbiter:
            conf_member['arbiterOnly'] = True
        conf_members.append({k: v for k, v in conf_member.items() if v is not None})

    config = {
        '_id': name,
        'members': conf_members,
    }
    logger.info(f"Building MongoDB config for replicaset {name} with {len(conf_members)} members.")
    return config


def members_in_sync(desired, observed, arbiter=None):
    """
    Compare declared members against the members of the live configuration.

    A field the live configuration does not report (None) is not compared.
    """
    desired_by_host = {}
    for member in desired:
        member = dict(member)
        if arbiter and member['host'] == arbiter:
            member['arbiterOnly'] = True
        desired_by_host[member['host']] = member
    observed_by_host = {m['host']: m for m in observed}

    if set(desired_by_host) != set(observed_by_host):
        return False

    for host, want in desired_by_host.items():
        have = observed_by_host[host]
        for key, value in have.items():
            if value is None or key not in want:
                continue
            if want[key] != value:
                return False
    return True
