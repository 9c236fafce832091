"""
Member declaration normalization.

A member is declared either as a bare 'hostname:port' string or as a map using
the snake_case keys below. Both shapes come out as a dict keyed by the
replica set wire field names, with every missing field defaulted.
"""

from replset_ctrl.errors import MemberTypeError, MemberValidationError

# declaration key -> (wire key, default)
MEMBER_DEFAULTS = {
    'host': ('host', None),
    'arbiter_only': ('arbiterOnly', False),
    'build_indexes': ('buildIndexes', True),
    'hidden': ('hidden', False),
    'priority': ('priority', 1),
    'tags': ('tags', {}),
    'slave_delay': ('slaveDelay', 0),
    'votes': ('votes', 1),
}

MEMBER_FIELDS = tuple(wire_key for wire_key, _ in MEMBER_DEFAULTS.values())


def normalize_member(raw):
    """
    Canonicalize one member declaration.

    :param raw: hostname string or attribute map.
    :return: dict keyed by wire field names.
    """
    if isinstance(raw, str):
        if not raw:
            raise MemberValidationError("Hostname must be a non-empty string")
        raw = {'host': raw}
    elif isinstance(raw, dict):
        if 'host' not in raw:
            raise MemberValidationError("Host field is required for a replSet member")
        if not isinstance(raw['host'], str) or not raw['host']:
            raise MemberValidationError("Hostname must be a non-empty string")
        for key in raw:
            if key not in MEMBER_DEFAULTS:
                raise MemberValidationError("Invalid key in member definition: {}".format(key))
    else:
        raise MemberTypeError("Invalid member definition. Must either be a hostname string "
                              "or a replSet member configuration map, got {}".format(type(raw).__name__))

    member = {}
    for decl_key, (wire_key, default) in MEMBER_DEFAULTS.items():
        value = raw.get(decl_key, default)
        # copy mutable defaults so callers never share the same tags dict
        member[wire_key] = dict(value) if isinstance(value, dict) else value
    return member


def normalize_members(raws):
    members = []
    seen = set()
    for raw in raws:
        member = normalize_member(raw)
        if member['host'] in seen:
            raise MemberValidationError(f"Duplicate host in member definitions: {member['host']}")
        seen.add(member['host'])
        members.append(member)
    return members
