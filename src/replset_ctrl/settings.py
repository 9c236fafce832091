import json
import os

from replset_ctrl.errors import ConfigurationError
from replset_ctrl.state import DEFAULT_INITIALIZE_HOST, DesiredState

REQUIRED_VARS = [
    'REPLICASET_NAME',
    'REPLICASET_MEMBERS',
]

OPTIONAL_VARS = {
    'REPLICASET_ARBITER': None,
    'INITIALIZE_HOST': DEFAULT_INITIALIZE_HOST,
    'ENSURE': 'present',
    'AUTH_ENABLED': 'disabled',
    'MONGO_ROOT_USERNAME': None,
    'MONGO_ROOT_PASSWORD': None,
    'MONGO_CONN_STRING': '127.0.0.1:27017',
    'MONGO_TRANSPORT': 'pymongo',
    'MONGO_SERVICE_NAME': None,
    'MONGO_SHELL': None,
    'COMMAND_RETRIES': '4',
    'WATCH_INTERVAL': '0',
    'DEBUG': '0',
}

TRANSPORTS = ('pymongo', 'shell', 'docker')


def _lookup(environ, name):
    # env variable names are matched case-insensitively
    for env_var in environ:
        if env_var.lower() == name.lower():
            return environ[env_var]
    return None


def _as_int(settings, key):
    try:
        settings[key] = int(settings[key])
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key.upper()} must be an integer, got {settings[key]!r}")


def get_env_settings(environ=None):
    """
    Read the controller settings from environment variables.

    :param environ: mapping to read from, defaults to os.environ.
    :return: dict keyed by lower-cased variable names.
    """
    environ = os.environ if environ is None else environ

    envs = {}
    for rv in REQUIRED_VARS:
        envs[rv.lower()] = _lookup(environ, rv)

    missing_vars = [var for var, value in envs.items() if not value]
    if missing_vars:
        raise ConfigurationError(f"Missing required ENV variables: {missing_vars}")

    for ov, default in OPTIONAL_VARS.items():
        value = _lookup(environ, ov)
        envs[ov.lower()] = value if value else default

    _as_int(envs, 'command_retries')
    _as_int(envs, 'watch_interval')
    envs['debug'] = envs['debug'] == '1'

    if envs['mongo_transport'] not in TRANSPORTS:
        raise ConfigurationError(f"MONGO_TRANSPORT must be one of {TRANSPORTS}, got {envs['mongo_transport']!r}")
    if envs['mongo_transport'] == 'docker' and not envs['mongo_service_name']:
        raise ConfigurationError("MONGO_SERVICE_NAME is required with the docker transport")

    envs['replicaset_members'] = parse_members(envs['replicaset_members'])
    return envs


def parse_members(value):
    """
    Parse REPLICASET_MEMBERS.

    Either a JSON list (host strings and/or member maps) or a comma separated
    list of 'host:port'.
    """
    value = value.strip()
    if value.startswith('['):
        try:
            members = json.loads(value)
        except ValueError as e:
            raise ConfigurationError(f"REPLICASET_MEMBERS is not valid JSON: {e}")
        return members
    return [host.strip() for host in value.split(',') if host.strip()]


def desired_state_from_settings(settings):
    return DesiredState.from_declaration(
        name=settings['replicaset_name'],
        members=settings['replicaset_members'],
        arbiter=settings.get('replicaset_arbiter'),
        initialize_host=settings.get('initialize_host'),
        ensure=settings.get('ensure', 'present'),
        auth_enabled=settings.get('auth_enabled', 'disabled'),
    )
