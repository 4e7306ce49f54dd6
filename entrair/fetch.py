#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: Fetch!
Turns one Graph query into a complete result set. Follows @odata.nextLink
cursors, waits out throttling, refreshes the token when it expires mid fetch
and gives up on permission errors, bad queries and repeated failures. A
fetch either returns every record or raises.
"""

import enum
import time
import urllib.parse
import requests

from collections import namedtuple
from entrair.errors import *
from entrair.utils import *

Page = namedtuple('Page', ['records', 'next_link'])

Attempt = namedtuple('Attempt', ['outcome', 'page', 'error'])

class Query(namedtuple('Query', ['url', 'filter', 'select', 'orderby', 'count'], defaults=(None, None, None, False))):
    """
    One logical Graph query: the endpoint plus its OData expressions.
    """
    __slots__ = ()

    def to_url(self):
        params = {}
        if self.filter:
            params['$filter'] = self.filter
        if self.select:
            params['$select'] = self.select
        if self.orderby:
            params['$orderby'] = self.orderby
        if self.count:
            params['$count'] = 'true'
        if not params:
            return self.url
        # spaces must reach Graph as %20, not '+'
        encoded = urllib.parse.urlencode(params, quote_via=urllib.parse.quote, safe="$'(),/:")
        separator = '&' if '?' in self.url else '?'
        return self.url + separator + encoded


class Outcome(enum.Enum):
    SUCCESS = 'success'
    THROTTLED = 'throttled'
    REAUTH = 'reauth'
    PERMISSION_DENIED = 'permission_denied'
    INVALID_QUERY = 'invalid_query'
    TRANSIENT = 'transient'


THROTTLE_STATUSES = (429, 503, 504)


class RetryState(object):
    def __init__(self):
        self.count = 0
        self.had_first_success = False


def build_header(access_token, consistency=False):
    header = {
        'Authorization': 'Bearer %s' % (access_token),
        'Content-Type': 'application/json',
    }
    if consistency:
        header['ConsistencyLevel'] = 'eventual'
    return header


class FetchContext(object):
    """
    Token and header state for one tenant, owned by the caller and passed
    into every fetch. ``refresh`` replaces the token and rewrites the header
    in place.

    :param token_provider: Anything with a ``get_token`` like TokenProvider
    :param tenant_id: Tenant the queries are scoped to
    :param audience: API audience the token is requested for
    :param login_hint: Account to prefer when refreshing delegated tokens
    :param consistency: Send ``ConsistencyLevel: eventual`` for $count queries
    """
    def __init__(self, token_provider, tenant_id, audience='graph', login_hint=None, consistency=False):
        self.token_provider = token_provider
        self.tenant_id = tenant_id
        self.audience = audience
        self.login_hint = login_hint
        self.consistency = consistency
        self.token = None
        self.header = {}

    def authenticate(self, interactive=False):
        return self.refresh(interactive=interactive, force_refresh=False)

    def refresh(self, interactive=False, force_refresh=True):
        self.token = self.token_provider.get_token(self.tenant_id,
                                                   login_hint=self.login_hint,
                                                   force_refresh=force_refresh,
                                                   interactive=interactive,
                                                   audience=self.audience)
        self.header.clear()
        self.header.update(build_header(self.token.access_token, self.consistency))
        return self

    def with_consistency(self):
        """Copy of this context sending the eventual consistency header, sharing the token."""
        ctx = FetchContext(self.token_provider, self.tenant_id, self.audience, self.login_hint, consistency=True)
        ctx.token = self.token
        if self.token:
            ctx.header.update(build_header(self.token.access_token, True))
        return ctx


class RequestExecutor(object):
    """
    Issues a single GET and decides what to do with the answer.

    :param session: requests.Session to send through
    :type session: requests.Session
    :param max_retries: Unclassified failures tolerated per fetch
    :type max_retries: int
    :param throttle_delay: Seconds to wait after 429, 503 or 504
    :type throttle_delay: float
    :param timeout: Per request timeout in seconds
    :type timeout: float
    """
    def __init__(self, session=None, max_retries=5, throttle_delay=5, timeout=600, debug=False):
        self.session = session or requests.Session()
        self.max_retries = max_retries
        self.throttle_delay = throttle_delay
        self.timeout = timeout
        self.logger = setup_logger(__name__, debug)

    def attempt(self, context, url, had_first_success=False):
        """
        Send one request and classify the result.

        :return: the outcome, the decoded page on success and the error otherwise
        :rtype: Attempt
        """
        try:
            r = self.session.get(url, headers=context.header, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self.logger.debug(f"Request to {url} failed: {str(e)}")
            return Attempt(Outcome.TRANSIENT, None, RequestFailed(f"Request failed: {str(e)}", url=url))

        status = r.status_code
        if 200 <= status < 300:
            try:
                return Attempt(Outcome.SUCCESS, self._decode(r), None)
            except ValueError as e:
                self.logger.debug(f"Could not decode response from {url}: {str(e)}")
                return Attempt(Outcome.TRANSIENT, None, RequestFailed(f"Undecodable response: {str(e)}", url=url, status=status))

        detail = self._error_message(r)
        if status == 401 and had_first_success:
            return Attempt(Outcome.REAUTH, None, TokenExpiredMidFetch(f"Token expired: {detail}", url=url, status=status))
        if status in (401, 403):
            return Attempt(Outcome.PERMISSION_DENIED, None, PermissionDenied(f"Permission denied: {detail}", url=url, status=status))
        if status == 400:
            return Attempt(Outcome.INVALID_QUERY, None, InvalidQuery(f"Invalid query: {detail}", url=url, status=status))
        if status in THROTTLE_STATUSES:
            return Attempt(Outcome.THROTTLED, None, Throttled(f"Throttled: {detail}", url=url, status=status))
        return Attempt(Outcome.TRANSIENT, None, RequestFailed(f"Unexpected response: {detail}", url=url, status=status))

    def _decode(self, r):
        result = r.json()
        if not isinstance(result, dict):
            raise ValueError(f"expected a JSON object, got {type(result).__name__}")
        if 'value' in result:
            records = result['value'] or []
        else:
            # single entity endpoints such as policies/authorizationPolicy
            records = [{k: v for k, v in result.items() if not k.startswith('@odata.')}]
        return Page(records, result.get('@odata.nextLink') or None)

    def _error_message(self, r):
        try:
            error = r.json().get('error', {})
            return '%s: %s' % (error.get('code', r.status_code), error.get('message', r.reason))
        except (ValueError, AttributeError):
            return str(r.reason)

    def execute(self, context, url, retry_state):
        """
        Fetch one page, retrying until it succeeds or a terminal error occurs.

        :param context: Token and header state. Refreshed in place on 401.
        :type context: FetchContext
        :param url: Fully formed request URL
        :type url: str
        :param retry_state: Counters shared by every page of the fetch
        :type retry_state: RetryState
        :return: The page
        :rtype: Page
        :raises PermissionDenied: on 403 or a 401 that a refresh cannot cure
        :raises InvalidQuery: on 400
        :raises TokenExpiredMidFetch: when the token refresh itself fails
        :raises RequestFailed: after max_retries unclassified failures
        """
        just_refreshed = False
        while True:
            outcome, page, error = self.attempt(context, url, retry_state.had_first_success)

            if outcome is Outcome.SUCCESS:
                return page

            if outcome is Outcome.THROTTLED:
                self.logger.info(f"Sleeping for {self.throttle_delay} seconds because the API throttled the request ({error.status}).")
                time.sleep(self.throttle_delay)
                continue

            if outcome is Outcome.REAUTH:
                if just_refreshed:
                    self.logger.error(f"Still unauthorized after refreshing the token for {url}.")
                    raise PermissionDenied(f"Unauthorized after token refresh: {error.message}", url=url, status=error.status)
                self.logger.info("401 unauthorized received mid fetch. Refreshing token.")
                try:
                    context.refresh(interactive=True)
                except TokenUnavailable as e:
                    raise TokenExpiredMidFetch(f"Token refresh failed: {str(e)}", url=url, status=error.status) from e
                just_refreshed = True
                continue

            if outcome is Outcome.PERMISSION_DENIED:
                self.logger.error(f"Permission denied on {url}. Check the roles and consent granted to the account.")
                raise error

            if outcome is Outcome.INVALID_QUERY:
                self.logger.error(f"Bad request on {url}. Not retrying.")
                raise error

            just_refreshed = False
            retry_state.count += 1
            if retry_state.count >= self.max_retries:
                self.logger.error(f"Error. No more retries on {url}.")
                raise RequestFailed(f"Gave up after {retry_state.count} failures: {error.message}", url=url, status=error.status) from error
            self.logger.info(f"Error. Retrying {url} up to {self.max_retries - retry_state.count} more times")

    def get(self, context, url):
        """Single non-paginated call with its own retry budget."""
        return self.execute(context, url, RetryState())


class PaginationDriver(object):
    """
    Follows @odata.nextLink until the cursor runs out.

    :param executor: Executor for the individual pages
    :type executor: RequestExecutor
    :param reset_retries_per_page: Give each page a fresh retry budget instead of sharing one across the fetch
    :type reset_retries_per_page: bool
    """
    def __init__(self, executor, reset_retries_per_page=False, debug=False):
        self.executor = executor
        self.reset_retries_per_page = reset_retries_per_page
        self.logger = setup_logger(__name__, debug)

    def fetch_all(self, context, url, projection=None):
        """
        Fetch every page of a query.

        :param context: Token and header state for the tenant
        :type context: FetchContext
        :param url: First page URL, or a Query
        :type url: str or Query
        :param projection: Applied to each record once every page has arrived
        :type projection: callable
        :return: All records in page order
        :rtype: list
        """
        if isinstance(url, Query):
            url = url.to_url()
        state = RetryState()
        accumulated = []
        pages = 0
        while url:
            page = self.executor.execute(context, url, state)
            accumulated.extend(page.records)
            pages += 1
            url = page.next_link
            if url:
                self.logger.debug(f"Received page {pages} with {len(page.records)} records. Following nextLink.")
                if state.had_first_success:
                    # bound expiry risk to a single page round trip
                    context.refresh(interactive=False, force_refresh=True)
            state.had_first_success = True
            if self.reset_retries_per_page:
                state.count = 0

        self.logger.debug(f"Fetch complete: {len(accumulated)} records over {pages} pages")
        if projection:
            return [projection(x) for x in accumulated]
        return accumulated
