"""
Unit tests for host identity verification (backupmgr/backup/hostkeys.py).
"""

from concurrent.futures import Future, TimeoutError as FutureTimeout

import pytest

from backupmgr.backup.hostkeys import TrustOnConnectPolicy, compose_host_identity
from backupmgr.exceptions import HostIdentityUntrusted


class TestComposeHostIdentity:

    def test_identity_format(self, host_key):
        assert compose_host_identity(host_key) == 'ssh-rsa#QUJD#RUZH'


class TestTrustOnConnectPolicy:
    """Test TrustOnConnectPolicy decisions."""

    def test_matching_identity_is_trusted(self, host_key):
        policy = TrustOnConnectPolicy('ssh-rsa#QUJD#RUZH')

        policy.missing_host_key(None, 'sftp.example.com', host_key)

        assert policy.wait(0) == (True, 'ssh-rsa#QUJD#RUZH')

    @pytest.mark.parametrize('expected', [
        'ssh-rsa#QUJD#RUZI',
        'ssh-dss#QUJD#RUZH',
        'ssh-rsa#QUJD#RUZH ',
        'SSH-RSA#QUJD#RUZH',
    ])
    def test_single_difference_is_untrusted(self, host_key, expected):
        policy = TrustOnConnectPolicy(expected)

        with pytest.raises(HostIdentityUntrusted):
            policy.missing_host_key(None, 'sftp.example.com', host_key)

        assert policy.wait(0) == (False, 'ssh-rsa#QUJD#RUZH')

    @pytest.mark.parametrize('expected', [None, ''])
    def test_no_trust_record_accepts_any_host(self, host_key, expected):
        policy = TrustOnConnectPolicy(expected)

        policy.missing_host_key(None, 'sftp.example.com', host_key)

        assert policy.wait(0)[0] is True

    def test_wait_times_out_without_decision(self):
        policy = TrustOnConnectPolicy('ssh-rsa#QUJD#RUZH')

        with pytest.raises(FutureTimeout):
            policy.wait(0.01)

    def test_abandon_propagates_connection_failure(self):
        policy = TrustOnConnectPolicy('ssh-rsa#QUJD#RUZH')
        connecting = Future()
        connecting.set_exception(ConnectionRefusedError('refused'))

        policy.abandon(connecting)

        with pytest.raises(ConnectionRefusedError):
            policy.wait(0)

    def test_abandon_after_decision_is_ignored(self, host_key):
        policy = TrustOnConnectPolicy(None)
        policy.missing_host_key(None, 'sftp.example.com', host_key)
        connecting = Future()
        connecting.set_exception(OSError('late failure'))

        policy.abandon(connecting)

        assert policy.wait(0)[0] is True

    def test_decision_is_set_once(self, host_key):
        policy = TrustOnConnectPolicy(None)

        policy.missing_host_key(None, 'a', host_key)
        policy.missing_host_key(None, 'b', host_key)

        assert policy.decision.done()
