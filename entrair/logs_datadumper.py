#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: logs_datadumper!
This module has the log pulls for Entra ID: sign-ins, directory audits and
user sign-in activity.
"""

from entrair.datadumper import DataDumper
from entrair.fetch import Query
from entrair.utils import *

SIGNIN_STATUS = {
    'all': None,
    'success': 'status/errorCode eq 0',
    'failure': 'status/errorCode ne 0',
}

AUDIT_RESULTS = ('success', 'failure', 'timeout', 'unknownFutureValue')

class LogsDataDumper(DataDumper):

    def __init__(self, output_dir, reports_dir, context, driver, config, debug=False, dry_run=False):
        super().__init__(output_dir, reports_dir, context, driver, config, debug, dry_run)
        self.logger = setup_logger(__name__, debug)

    def get_signins(self, user_ids=None, range_from_days_ago=None, range_to_days_ago=None, status='all'):
        """Sign-in events, one query per user id.
        API Reference: https://learn.microsoft.com/en-us/graph/api/resources/signin?view=graph-rest-beta

        :param user_ids: Object ids of the users to pull. All users when empty.
        :type user_ids: list
        :param range_from_days_ago: Newest end of the window, in days before now
        :type range_from_days_ago: int
        :param range_to_days_ago: Oldest end of the window, in days before now
        :type range_to_days_ago: int
        :param status: 'all', 'success' or 'failure'
        :type status: str
        :return: Flattened sign-in records
        :rtype: list
        """
        if status not in SIGNIN_STATUS:
            raise ValueError(f"Unknown sign-in status {status}. Expected one of {', '.join(SIGNIN_STATUS)}")
        window = self.date_filter('createdDateTime', range_from_days_ago, range_to_days_ago)

        def build_query(user_id):
            clauses = []
            if user_id:
                clauses.append('userId eq %s' % (odata_quote(user_id)))
            if window:
                clauses.append(window)
            if SIGNIN_STATUS[status]:
                clauses.append(SIGNIN_STATUS[status])
            return Query(self.get_url('auditLogs/signIns'),
                         filter=' and '.join(clauses) or None,
                         orderby='createdDateTime desc')

        return self.fetch_each(user_ids, build_query, self.project_signin)

    def project_signin(self, record):
        status = record.get('status') or {}
        location = record.get('location') or {}
        device = record.get('deviceDetail') or {}
        return {
            'createdDateTime': normalize_timestamp(record.get('createdDateTime')),
            'userPrincipalName': record.get('userPrincipalName'),
            'userDisplayName': record.get('userDisplayName'),
            'userId': record.get('userId'),
            'appDisplayName': record.get('appDisplayName'),
            'appId': record.get('appId'),
            'ipAddress': record.get('ipAddress'),
            'clientAppUsed': record.get('clientAppUsed'),
            'isInteractive': record.get('isInteractive'),
            'conditionalAccessStatus': record.get('conditionalAccessStatus'),
            'riskLevelDuringSignIn': record.get('riskLevelDuringSignIn'),
            'errorCode': status.get('errorCode'),
            'failureReason': status.get('failureReason'),
            'city': location.get('city'),
            'state': location.get('state'),
            'countryOrRegion': location.get('countryOrRegion'),
            'operatingSystem': device.get('operatingSystem'),
            'browser': device.get('browser'),
            'deviceId': device.get('deviceId'),
            'correlationId': record.get('correlationId'),
            'id': record.get('id'),
        }

    def dump_signins(self):
        """
        Dump sign in logs for the configured users and day range
        """
        range_from, range_to = self.day_range()
        status = config_get(self.config, 'filters', 'signin_status', self.logger, default='all')
        self.logger.info('Getting sign in logs...')
        records = self.get_signins(self.filter_ids('user_ids'), range_from, range_to, status)
        self.write_records('signins', records)
        self.logger.info('Finished dumping sign in logs.')

    def get_audits(self, user_ids=None, range_from_days_ago=None, range_to_days_ago=None, result=None, category=None):
        """Directory audit events initiated by the given users.
        API Reference: https://learn.microsoft.com/en-us/graph/api/resources/directoryaudit?view=graph-rest-beta

        Users referenced only by id are resolved to their display name with
        one extra call each. A failed resolution leaves the name blank.
        """
        if result and result not in AUDIT_RESULTS:
            raise ValueError(f"Unknown audit result {result}. Expected one of {', '.join(AUDIT_RESULTS)}")
        window = self.date_filter('activityDateTime', range_from_days_ago, range_to_days_ago)

        def build_query(user_id):
            clauses = []
            if user_id:
                clauses.append('initiatedBy/user/id eq %s' % (odata_quote(user_id)))
            if window:
                clauses.append(window)
            if result:
                clauses.append('result eq %s' % (odata_quote(result)))
            if category:
                clauses.append('category eq %s' % (odata_quote(category)))
            return Query(self.get_url('auditLogs/directoryAudits'),
                         filter=' and '.join(clauses) or None,
                         orderby='activityDateTime desc')

        return self.fetch_each(user_ids, build_query, self.project_audit)

    def resolve_user(self, user_id):
        if not user_id:
            return {}
        return self.lookup('users/' + user_id, select='id,displayName,userPrincipalName')

    def project_audit(self, record):
        initiated_by = record.get('initiatedBy') or {}
        user = initiated_by.get('user') or {}
        app = initiated_by.get('app') or {}
        if user.get('id') and not user.get('displayName'):
            user = dict(user, **{k: v for k, v in self.resolve_user(user['id']).items() if k != 'id'})

        targets = []
        for target in record.get('targetResources') or []:
            name = target.get('displayName') or target.get('userPrincipalName')
            if not name and target.get('type') == 'User':
                resolved = self.resolve_user(target.get('id'))
                name = resolved.get('displayName') or resolved.get('userPrincipalName')
            targets.append({'id': target.get('id'), 'type': target.get('type'), 'displayName': name or ''})

        return {
            'activityDateTime': normalize_timestamp(record.get('activityDateTime')),
            'activityDisplayName': record.get('activityDisplayName'),
            'category': record.get('category'),
            'result': record.get('result'),
            'resultReason': record.get('resultReason'),
            'loggedByService': record.get('loggedByService'),
            'initiatedByUserId': user.get('id'),
            'initiatedByUserPrincipalName': user.get('userPrincipalName'),
            'initiatedByUserDisplayName': user.get('displayName'),
            'initiatedByIpAddress': user.get('ipAddress'),
            'initiatedByAppId': app.get('appId'),
            'initiatedByAppDisplayName': app.get('displayName'),
            'targetResources': targets,
            'correlationId': record.get('correlationId'),
            'id': record.get('id'),
        }

    def dump_audits(self):
        """
        Dump directory audit logs initiated by the configured users
        """
        range_from, range_to = self.day_range()
        result = config_get(self.config, 'filters', 'audit_result', self.logger) or None
        category = config_get(self.config, 'filters', 'audit_category', self.logger) or None
        self.logger.info('Getting Entra ID audit logs...')
        records = self.get_audits(self.filter_ids('user_ids'), range_from, range_to, result, category)
        self.write_records('audits', records)
        self.logger.info('Finished dumping Entra ID audit logs.')

    def get_inactive_users(self, days_inactive=30):
        """Users whose last sign in is older than ``days_inactive`` days.

        Filtering on signInActivity is an advanced query, so the request is
        sent with $count and the eventual consistency header.
        """
        cutoff = odata_datetime(days_ago(days_inactive))
        query = Query(self.get_url('users'),
                      filter='signInActivity/lastSignInDateTime le %s' % (cutoff),
                      select='id,displayName,userPrincipalName,accountEnabled,userType,signInActivity',
                      count=True)
        return self.fetch(query, self.project_user_activity, consistency=True)

    def project_user_activity(self, record):
        activity = record.get('signInActivity') or {}
        return {
            'userPrincipalName': record.get('userPrincipalName'),
            'displayName': record.get('displayName'),
            'accountEnabled': record.get('accountEnabled'),
            'userType': record.get('userType'),
            'lastSignInDateTime': normalize_timestamp(activity.get('lastSignInDateTime')),
            'lastNonInteractiveSignInDateTime': normalize_timestamp(activity.get('lastNonInteractiveSignInDateTime')),
            'id': record.get('id'),
        }

    def dump_inactive_users(self):
        """
        Dump users who have not signed in for the configured number of days
        """
        days = config_getint(self.config, 'filters', 'inactive_days', self.logger, default=30)
        self.logger.info(f'Getting users inactive for {days} days...')
        self.write_records('inactive_users', self.get_inactive_users(days))
        self.logger.info('Finished dumping inactive users.')
