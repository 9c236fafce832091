import pytest
import sys
from pathlib import Path

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from replset_ctrl.channel import CommandChannel  # noqa: E402
from replset_ctrl.errors import CommandExecutionError  # noqa: E402

UNCONFIGURED = {'ok': 0, 'info': 'run rs.initiate(...) if not yet done for the set',
                'errmsg': 'no replset config has been received', 'code': 94}
NO_REPLSET = {'ok': 0, 'errmsg': 'not running with --replSet', 'code': 76}
UNAUTHORIZED = {'ok': 0, 'errmsg': 'command replSetGetStatus requires authentication', 'code': 13}
UNREACHABLE = CommandExecutionError("connection refused")


def in_set(name):
    return {'ok': 1, 'set': name, 'members': []}


class FakeChannel(CommandChannel):
    """
    Scripted command channel.

    statuses: host -> rs.status() document (or exception to raise).
    masters: host -> list of db.isMaster() documents, consumed in order; the
    last one keeps being returned.
    conf: rs.conf() document (or exception). Successful initiate/reconfig
    replace it with the config that was sent.
    """

    def __init__(self, statuses=None, masters=None, conf=None, initiate_result=None, reconfig_result=None):
        super().__init__(retries=1)
        self.statuses = statuses or {}
        self.masters = {host: list(docs) for host, docs in (masters or {}).items()}
        self.conf = conf if conf is not None else dict(UNCONFIGURED)
        self.initiate_result = initiate_result or {'ok': 1}
        self.reconfig_result = reconfig_result or {'ok': 1}
        self.calls = []

    @staticmethod
    def _answer(value):
        if isinstance(value, Exception):
            raise value
        return dict(value)

    def rs_conf(self, host=None):
        self.calls.append(('rs_conf', host))
        return self._answer(self.conf)

    def rs_status(self, host):
        self.calls.append(('rs_status', host))
        return self._answer(self.statuses.get(host, UNREACHABLE))

    def is_master(self, host):
        self.calls.append(('is_master', host))
        docs = self.masters.get(host)
        if not docs:
            return {'ismaster': False}
        doc = docs.pop(0) if len(docs) > 1 else docs[0]
        return self._answer(doc)

    def rs_initiate(self, conf, host):
        self.calls.append(('rs_initiate', host, conf))
        if self.initiate_result.get('ok'):
            self.conf = dict(conf, version=1)
        return dict(self.initiate_result)

    def rs_reconfig(self, conf, host):
        self.calls.append(('rs_reconfig', host, conf))
        if self.reconfig_result.get('ok'):
            self.conf = dict(conf, version=self.conf.get('version', 1) + 1)
        return dict(self.reconfig_result)

    def mutating_calls(self):
        return [c for c in self.calls if c[0] in ('rs_initiate', 'rs_reconfig')]


@pytest.fixture
def fake_channel():
    return FakeChannel
