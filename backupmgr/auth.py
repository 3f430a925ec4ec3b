"""
Delegated authorization for the object store.

Credentials for S3 come from one of two places:
- static access keys in the configuration, used as-is
- AWS IAM Identity Center: an OAuth2 device authorization grant yields an
  access/refresh token pair (the CredentialRecord), which is exchanged for
  short-lived role credentials on every run

Headless runs never prompt. They reuse the stored token, refreshing it when
expired; without a usable token they fail.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import ObjectStoreConfig
from .exceptions import BackendPrereqMissing


logger = logging.getLogger(__name__)

CLIENT_NAME = 'backupmgr'
DEVICE_CODE_GRANT = 'urn:ietf:params:oauth:grant-type:device_code'
REFRESH_TOKEN_GRANT = 'refresh_token'
SCOPES = ['sso:account:access']


class DelegatedAuthorizer:
    """
    Obtains S3 credentials for an ObjectStoreConfig.

    The CredentialRecord inside the configuration is updated in place whenever
    a token is issued or rotated; persisting it is up to the caller.
    """

    def __init__(
        self,
        config: ObjectStoreConfig,
        headless: bool = False,
        session: Optional[boto3.session.Session] = None,
        prompt: Callable[[str], None] = print,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the authorizer.

        Args:
            config: Object store configuration (mutated on token rotation)
            headless: Never run the interactive device flow
            session: boto3 session used to create the OIDC and SSO clients
            prompt: Callable used to show the verification URL to the operator
            sleep: Callable used between device flow polls
        """
        self.config = config
        self.headless = headless
        self.session = session or boto3.session.Session()
        self.prompt = prompt
        self.sleep = sleep

    def credentials(self) -> Dict[str, Optional[str]]:
        """
        Return keyword arguments for a boto3 S3 client.

        Raises:
            BackendPrereqMissing: If no credentials can be obtained
        """
        if self.config.has_static_keys:
            return {
                'aws_access_key_id': self.config.access_key_id,
                'aws_secret_access_key': self.config.secret_access_key,
                'aws_session_token': None,
            }

        self._require_sso_settings()

        try:
            access_token = self.access_token()
            sso = self.session.client('sso', region_name=self.config.sso_region)
            response = sso.get_role_credentials(
                roleName=self.config.sso_role_name,
                accountId=self.config.sso_account_id,
                accessToken=access_token
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise BackendPrereqMissing(f"Object store authorization failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise BackendPrereqMissing(f"Object store authorization failed: {e}")

        role = response['roleCredentials']
        return {
            'aws_access_key_id': role['accessKeyId'],
            'aws_secret_access_key': role['secretAccessKey'],
            'aws_session_token': role['sessionToken'],
        }

    def access_token(self) -> str:
        """Return a valid access token, refreshing or authorizing as needed."""
        record = self.config.credentials

        if not record.is_expired():
            logger.debug("Reusing stored access token")
            return record.access_token

        oidc = self.session.client('sso-oidc', region_name=self.config.sso_region)

        if record.refresh_token and self._client_registered():
            logger.info("Refreshing object store access token")
            try:
                response = oidc.create_token(
                    clientId=self.config.client_id,
                    clientSecret=self.config.client_secret,
                    grantType=REFRESH_TOKEN_GRANT,
                    refreshToken=record.refresh_token
                )
                record.update_from_token(response)
                return record.access_token
            except ClientError as e:
                if self.headless:
                    raise
                logger.warning(f"Token refresh failed, starting a new authorization: {e}")
                record.clear()

        if self.headless:
            raise BackendPrereqMissing(
                "No usable object store authorization is stored. "
                "Run once without -headless to authorize."
            )

        return self._authorize_device(oidc)

    def _client_registered(self) -> bool:
        if not self.config.client_id or not self.config.client_secret:
            return False
        expires_at = self.config.client_secret_expires_at
        return not expires_at or expires_at > time.time()

    def _register_client(self, oidc):
        logger.info("Registering OIDC client")
        response = oidc.register_client(
            clientName=CLIENT_NAME,
            clientType='public',
            scopes=SCOPES
        )
        self.config.client_id = response['clientId']
        self.config.client_secret = response['clientSecret']
        self.config.client_secret_expires_at = response.get('clientSecretExpiresAt')

    def _authorize_device(self, oidc) -> str:
        """
        Run the interactive device authorization grant.

        Returns:
            The new access token
        """
        if not self._client_registered():
            self._register_client(oidc)

        authorization = oidc.start_device_authorization(
            clientId=self.config.client_id,
            clientSecret=self.config.client_secret,
            startUrl=self.config.sso_start_url
        )

        url = authorization.get('verificationUriComplete') or authorization['verificationUri']
        self.prompt(f"Open {url} and confirm code {authorization['userCode']} to authorize Backup Manager.")

        interval = authorization.get('interval') or 5
        deadline = time.monotonic() + authorization.get('expiresIn', 600)

        while time.monotonic() < deadline:
            self.sleep(interval)
            try:
                response = oidc.create_token(
                    clientId=self.config.client_id,
                    clientSecret=self.config.client_secret,
                    grantType=DEVICE_CODE_GRANT,
                    deviceCode=authorization['deviceCode']
                )
            except oidc.exceptions.AuthorizationPendingException:
                continue
            except oidc.exceptions.SlowDownException:
                interval += 5
                continue

            self.config.credentials.update_from_token(response, datetime.now(timezone.utc))
            logger.info("Object store authorization granted")
            return self.config.credentials.access_token

        raise BackendPrereqMissing("Object store authorization was not confirmed in time.")

    def _require_sso_settings(self):
        missing = [
            name for name in ('sso_start_url', 'sso_region', 'sso_account_id', 'sso_role_name')
            if not getattr(self.config, name)
        ]
        if missing:
            raise BackendPrereqMissing(
                f"Object store needs either static access keys or delegated authorization settings "
                f"(missing: {', '.join(missing)})"
            )
