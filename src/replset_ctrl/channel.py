"""
Command channels: the only way the reconciler talks to MongoDB.

Every channel answers the same five administrative calls (rs.conf(),
rs.status(), db.isMaster(), rs.initiate(), rs.reconfig()) with an already
decoded document. Server-side failures come back as {'ok': 0, 'errmsg': ...}
documents, while failing to reach a host at all raises CommandExecutionError.

Shell based channels evaluate a script with the mongo shell (locally or inside
the service's docker container) and decode what it prints. PyMongoChannel runs
the equivalent admin commands through the native driver.
"""

from contextlib import closing, contextmanager
import json
import logging
import os
import re
import subprocess

import backoff
import docker
import pymongo as pm
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from replset_ctrl.errors import CommandExecutionError, ConfigurationError

DEFAULT_RETRIES = 4

# Shell helpers throw on server errors (rs.conf() on a fresh node, rs.status()
# without --replSet); re-emit those as a plain ok: 0 document
PRINT_CONVENTION = ("try {{ printjson({expr}) }} catch (e) {{ "
                    "printjson({{ok: 0, errmsg: e.message, code: e.code}}) }}")
# mongosh printjson is not JSON, print relaxed extended JSON instead
MONGOSH_PRINT_CONVENTION = ("try {{ print(EJSON.stringify({expr}, {{relaxed: true}})) }} catch (e) {{ "
                            "print(JSON.stringify({{ok: 0, errmsg: e.message, code: e.code}})) }}")

# Timestamp(1462971623, 1) -> 1462971623
TIMESTAMP_WRAPPER = re.compile(r'\w+\((\d+),\s*\d+\)')
# ObjectId("5733..."), NumberLong(5), ISODate("...") -> inner value
OBJECT_WRAPPER = re.compile(r'\w+\((.+?)\)')

UNINITIALIZED_INFO = 'run rs.initiate(...) if not yet done for the set'
NOT_YET_INITIALIZED = 94
UNAUTHORIZED = 13
AUTHENTICATION_FAILED = 18


def decode_shell_output(output, host=None):
    """
    Turn what printjson wrote into a dict.

    The legacy shell prints wrapper objects (Timestamp, ObjectId, NumberLong...)
    that are not JSON; they are reduced to their inner value first. A literal
    null is an empty document.
    """
    output = TIMESTAMP_WRAPPER.sub(r'\1', output)
    output = OBJECT_WRAPPER.sub(r'\1', output)

    if output.strip() == 'null':
        return {}

    try:
        return json.loads(output)
    except ValueError as e:
        raise CommandExecutionError(f"Cannot decode shell output from {host or 'default host'}: {output!r} ({e})",
                                    host=host) from e


def failure_document(opfail):
    """Build the ok: 0 document the shell would have printed for an OperationFailure."""
    doc = dict(opfail.details or {})
    doc['ok'] = 0
    doc.setdefault('errmsg', str(opfail))
    doc.setdefault('code', opfail.code)
    if opfail.code == NOT_YET_INITIALIZED:
        doc.setdefault('info', UNINITIALIZED_INFO)
    return doc


class CommandChannel:
    """Interface the reconciler depends on."""

    def __init__(self, retries=DEFAULT_RETRIES, retry_factor=1):
        self.retries = retries
        self.retry_factor = retry_factor

    def _retrying(self, func, retries=None):
        max_tries = max(self.retries if retries is None else retries, 1)
        return backoff.on_exception(backoff.expo, CommandExecutionError,
                                    max_tries=max_tries, factor=self.retry_factor)(func)

    def rs_conf(self, host=None):
        raise NotImplementedError

    def rs_status(self, host):
        raise NotImplementedError

    def is_master(self, host):
        raise NotImplementedError

    def rs_initiate(self, conf, host):
        raise NotImplementedError

    def rs_reconfig(self, conf, host):
        raise NotImplementedError


class ShellCommandChannel(CommandChannel):
    """Base for channels evaluating javascript with the mongo shell."""

    def __init__(self, shell='mongo', username=None, password=None, auth_source='admin', **kwargs):
        super().__init__(**kwargs)
        self.shell = shell
        self.username = username
        self.password = password
        self.auth_source = auth_source
        if os.path.basename(shell) == 'mongosh':
            self.print_convention = MONGOSH_PRINT_CONVENTION
        else:
            self.print_convention = PRINT_CONVENTION

    def shell_args(self, script, target_db, host):
        args = [self.shell, '--quiet']
        if host:
            args += ['--host', host]
        if self.username:
            args += ['--username', self.username, '--password', self.password,
                     '--authenticationDatabase', self.auth_source]
        args += [target_db, '--eval', script]
        return args

    def _eval_once(self, script, target_db, host):
        raise NotImplementedError

    def eval(self, script, target_db='admin', host=None, retries=None):
        """
        Execute a script and return what it printed.

        :param script: javascript to evaluate.
        :param target_db: database the shell connects to.
        :param host: 'host:port' to run against, None for the channel default.
        :param retries: attempts on connection failure (defaults to the channel's).
        """
        return self._retrying(self._eval_once, retries)(script, target_db, host)

    def run_command(self, expr, host=None, retries=None):
        logger = logging.getLogger(__name__)

        output = self.eval(self.print_convention.format(expr=expr), 'admin', host, retries)
        logger.debug("{} on {} returned: {}".format(expr, host or 'default host', output.strip()))
        return decode_shell_output(output, host)

    def rs_conf(self, host=None):
        return self.run_command('rs.conf()', host)

    def rs_status(self, host):
        return self.run_command('rs.status()', host)

    def is_master(self, host):
        return self.run_command('db.isMaster()', host)

    def rs_initiate(self, conf, host):
        return self.run_command("rs.initiate({})".format(json.dumps(conf)), host)

    def rs_reconfig(self, conf, host):
        return self.run_command("rs.reconfig({})".format(json.dumps(conf)), host)


class ShellChannel(ShellCommandChannel):
    """Runs the mongo shell installed on this machine."""

    def __init__(self, default_host=None, timeout=60, **kwargs):
        super().__init__(**kwargs)
        self.default_host = default_host
        self.timeout = timeout

    def _eval_once(self, script, target_db, host):
        host = host or self.default_host
        try:
            proc = subprocess.run(self.shell_args(script, target_db, host),
                                  capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CommandExecutionError(f"Failed to run {self.shell} against {host}: {e}", host=host) from e

        if proc.returncode != 0:
            raise CommandExecutionError("{} exited with code {} on {}: {}".format(
                self.shell, proc.returncode, host, (proc.stderr or proc.stdout).strip()), host=host)
        return proc.stdout


class DockerChannel(ShellCommandChannel):
    """Runs the mongo shell inside a running container of the mongo service."""

    def __init__(self, service_name, shell='mongosh', **kwargs):
        super().__init__(shell=shell, **kwargs)
        self.service_name = service_name

    def find_container(self, dc):
        logger = logging.getLogger(__name__)

        # container name matching is more reliable than Container ID
        containers = dc.containers.list()
        container = next((c for c in containers if c.name.split('.')[0] == self.service_name), None)
        if container is None:
            logger.debug("Available container names: {}".format([c.name for c in containers]))
            raise CommandExecutionError(f"No MongoDB containers found matching service name: {self.service_name}")
        return container

    def _eval_once(self, script, target_db, host):
        try:
            with closing(docker.from_env()) as dc:
                container = self.find_container(dc)
                res = container.exec_run(self.shell_args(script, target_db, host))
        except docker.errors.APIError as e:
            raise CommandExecutionError(f"Docker exec against {host} failed: {e}", host=host) from e

        output = res.output.decode()
        if res.exit_code != 0:
            raise CommandExecutionError(f"{self.shell} exited with code {res.exit_code} on {host}: {output.strip()}",
                                        host=host)
        return output


class PyMongoChannel(CommandChannel):
    """Runs the replica set admin commands through the native driver."""

    def __init__(self, conn_string='127.0.0.1:27017', username=None, password=None, auth_source='admin',
                 server_selection_timeout_ms=15000, connect_timeout_ms=30000, socket_timeout_ms=30000, **kwargs):
        super().__init__(**kwargs)
        self.conn_string = conn_string
        self.username = username
        self.password = password
        self.auth_source = auth_source
        self.timeouts = dict(
            serverSelectionTimeoutMS=server_selection_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )

    def is_seed(self, host):
        return not host or host == self.conn_string

    @contextmanager
    def client(self, host=None, authenticate=True):
        """
        Open a client on one member, or on the seed connection string.

        The seed (a single address, a host list or a full mongodb:// URI) goes
        through driver discovery; a named member is interrogated directly.
        """
        kwargs = dict(self.timeouts)
        if not self.is_seed(host):
            #NOTE: Mongo > 4 defaults to 'false' which forces discovery instead of direct interrogation
            kwargs['directConnection'] = True
        if authenticate and self.username:
            kwargs.update(username=self.username, password=self.password, authSource=self.auth_source)

        mc = pm.MongoClient(host or self.conn_string, **kwargs)
        try:
            yield mc
        finally:
            mc.close()

    def admin_command(self, host, command, *args, authenticate=True, **kwargs):
        """Run one admin command, returning an ok: 0 document on server-side failure."""
        logger = logging.getLogger(__name__)
        target = host or self.conn_string

        def attempt():
            try:
                with self.client(host, authenticate) as mc:
                    return mc.admin.command(command, *args, **kwargs)
            except OperationFailure as of:
                logger.debug("{} on {} failed: ({})".format(command, target, of))
                return failure_document(of)
            except ConnectionFailure as e:
                raise CommandExecutionError(f"Cannot connect to {target}: {e}", host=host) from e
            except PyMongoError as e:
                # bad URI, conflicting client options...
                raise CommandExecutionError(f"Cannot run {command} against {target}: {e}", host=host) from e

        return self._retrying(attempt)()

    def rs_conf(self, host=None):
        res = self.admin_command(host, 'replSetGetConfig')
        if res.get('ok') and 'config' in res:
            return res['config']
        return res

    def rs_status(self, host):
        return self.admin_command(host, 'replSetGetStatus')

    def is_master(self, host):
        # Prefer unauthenticated hello to avoid noisy auth errors during fresh deployments
        res = self.admin_command(host, 'hello', authenticate=False)
        res.setdefault('ismaster', res.get('isWritablePrimary', False))
        return res

    def rs_initiate(self, conf, host):
        logger = logging.getLogger(__name__)

        # A keyfile deployment without users only accepts replSetInitiate unauthenticated
        # (localhost exception), so try that first
        res = self.admin_command(host, 'replSetInitiate', conf, authenticate=False)
        if not res.get('ok') and res.get('code') == UNAUTHORIZED and self.username:
            logger.info(f"replSetInitiate on {host} requires authentication - retrying with credentials...")
            res = self.admin_command(host, 'replSetInitiate', conf)
        return res

    def rs_reconfig(self, conf, host):
        current = self.rs_conf(host)
        if 'version' not in current:
            if current.get('ok') == 0:
                return current
            return {'ok': 0, 'errmsg': f"No replica set config found on {host}"}

        # Incrementing 'version' (not 'term', mongo handles it automatically)
        conf = dict(conf, version=current['version'] + 1)
        return self.admin_command(host, 'replSetReconfig', conf)


def build_channel(settings):
    """Pick the command channel transport from settings."""
    transport = settings.get('mongo_transport') or 'pymongo'
    common = dict(
        retries=settings.get('command_retries', DEFAULT_RETRIES),
        username=settings.get('mongo_root_username'),
        password=settings.get('mongo_root_password'),
    )

    if transport == 'pymongo':
        return PyMongoChannel(conn_string=settings.get('mongo_conn_string'), **common)
    if transport == 'shell':
        return ShellChannel(default_host=settings.get('mongo_conn_string'),
                            shell=settings.get('mongo_shell') or 'mongo', **common)
    if transport == 'docker':
        return DockerChannel(service_name=settings['mongo_service_name'],
                             shell=settings.get('mongo_shell') or 'mongosh', **common)

    raise ConfigurationError(f"Unknown mongo transport: {transport}")
