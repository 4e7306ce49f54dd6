#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: Auth!
This module obtains and refreshes Entra ID access tokens with msal.
"""

import time
import msal

from collections import namedtuple
from entrair.errors import TokenUnavailable
from entrair.utils import *

AccessToken = namedtuple('AccessToken', ['access_token', 'expiry', 'account'])

# Microsoft Graph PowerShell, a first party public client every tenant knows
DEFAULT_CLIENT_ID = '14d82eec-204b-4c2f-b7e8-296a70dab67e'

AUDIENCES = {
    'graph': 'graph_api',
    'aadgraph': 'aad_graph_api',
}

class TokenProvider():
    """
    Token provider for a single tenant.

    With an application secret the client credentials flow is used and every
    request is app only. Without one, tokens are acquired for a user through
    the msal public client: silently from the cache when possible, and
    through the browser when ``interactive`` is requested.

    :param tenant_id: Tenant ID of the Entra ID tenant
    :type tenant_id: str
    :param client_id: Application (client) ID
    :type client_id: str
    :param client_secret: Client secret for app only authentication
    :type client_secret: str
    :param us_government: Use the US government cloud endpoints
    :type us_government: bool
    :param login_hint: Account to prefer for delegated authentication
    :type login_hint: str
    """
    def __init__(self, tenant_id, client_id=None, client_secret=None, us_government=False, login_hint=None, debug=False):
        self.tenant_id = tenant_id
        self.client_id = client_id or DEFAULT_CLIENT_ID
        self.client_secret = client_secret
        self.us_government = us_government
        self.login_hint = login_hint
        self.endpoints = get_endpoints(us_government)
        self.logger = setup_logger(__name__, debug)
        self._app = None

    def get_authority_url(self, tenant_id=None):
        """
        Returns the authority URL for the commercial or government tenant specified,
        or the common one if no tenant was specified.
        """
        tenant = tenant_id or self.tenant_id or 'common'
        return '{}/{}'.format(self.endpoints['authority_api'], tenant)

    def get_scopes(self, audience='graph'):
        if audience not in AUDIENCES:
            raise ValueError(f"Unknown audience {audience}. Expected one of {', '.join(AUDIENCES)}")
        return [self.endpoints[AUDIENCES[audience]] + '/.default']

    @property
    def app_only(self):
        return bool(self.client_secret)

    def _get_app(self, tenant_id):
        if self._app is None:
            authority_uri = self.get_authority_url(tenant_id)
            self.logger.debug(f"Authentication authority uri: {str(authority_uri)}")
            if self.app_only:
                self._app = msal.ConfidentialClientApplication(client_id=self.client_id, client_credential=self.client_secret, authority=authority_uri)
            else:
                self._app = msal.PublicClientApplication(client_id=self.client_id, authority=authority_uri)
        return self._app

    def get_token(self, tenant_id=None, login_hint=None, force_refresh=False, interactive=False, audience='graph'):
        """
        Get an access token for the tenant.

        :param tenant_id: Tenant to authenticate against. Defaults to the provider's tenant.
        :type tenant_id: str
        :param login_hint: Account to use for delegated authentication
        :type login_hint: str
        :param force_refresh: Skip any cached token
        :type force_refresh: bool
        :param interactive: Allow a browser prompt when silent acquisition fails
        :type interactive: bool
        :param audience: 'graph' or 'aadgraph'
        :type audience: str
        :return: The token
        :rtype: AccessToken
        :raises TokenUnavailable: if no token could be obtained
        """
        scopes = self.get_scopes(audience)
        login_hint = login_hint or self.login_hint
        if self.app_only:
            if force_refresh:
                # client credential tokens live in the app's cache
                self._app = None
            tokendata = self._get_app(tenant_id).acquire_token_for_client(scopes=scopes)
        else:
            tokendata = self._acquire_delegated(tenant_id, scopes, login_hint, force_refresh, interactive)
        return self._to_access_token(tokendata, scopes)

    def _acquire_delegated(self, tenant_id, scopes, login_hint, force_refresh, interactive):
        app = self._get_app(tenant_id)
        tokendata = None
        accounts = app.get_accounts(username=login_hint) if login_hint else app.get_accounts()
        if accounts:
            self.logger.debug(f"Trying silent token acquisition for {accounts[0].get('username')}")
            tokendata = app.acquire_token_silent(scopes, account=accounts[0], force_refresh=force_refresh)
        if not tokendata and interactive:
            self.logger.info("Opening browser for interactive authentication.")
            tokendata = app.acquire_token_interactive(scopes, login_hint=login_hint)
        if not tokendata:
            raise TokenUnavailable(f"No cached token for {login_hint or 'any account'} and interactive authentication not allowed")
        return tokendata

    def _to_access_token(self, tokendata, scopes):
        if 'error' in tokendata:
            self.logger.error("There was an issue with your auth: " + str(tokendata.get('error_description', tokendata['error'])))
            raise TokenUnavailable(f"Could not get a token for {', '.join(scopes)}: {tokendata['error']}")
        if 'access_token' not in tokendata:
            raise TokenUnavailable(f"Token response for {', '.join(scopes)} carried no access token")
        expiry = time.time() + int(tokendata.get('expires_in', 0))
        claims = tokendata.get('id_token_claims') or {}
        account = claims.get('preferred_username') or self.client_id
        self.logger.debug(f"Obtained token for {account} valid until {expiry}")
        return AccessToken(tokendata['access_token'], expiry, account)
