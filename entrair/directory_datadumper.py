#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: directory_datadumper!
This module has the directory configuration pulls for Entra ID: role
assignments, application permissions, domains, MFA registration and
conditional access policies.
"""

from entrair.datadumper import DataDumper
from entrair.fetch import Query
from entrair.utils import *

# Role template ids treated as privileged when the tenant does not expose isPrivileged
PRIVILEGED_ROLE_TEMPLATES = {
    '62e90394-69f5-4237-9190-012177145e10',  # Global Administrator
    'e8611ab8-c189-46e8-94e1-60213ab1f814',  # Privileged Role Administrator
    '7be44c8a-adaf-4e2a-84d6-ab2649e08a13',  # Privileged Authentication Administrator
    '194ae4cb-b126-40b2-bd5b-6091b380977d',  # Security Administrator
    '9b895d92-2cd3-44c7-9d02-a6ac2d5ea5c3',  # Application Administrator
    '158c047a-c907-4556-b7ef-446551a6b5f7',  # Cloud Application Administrator
    '29232cdf-9323-42fd-ade2-1d097af3e4de',  # Exchange Administrator
    'fe930be7-5e62-47db-91af-98c3a49a38b1',  # User Administrator
    'b1be1c3e-b65d-4f19-8427-f6fa0d97feb9',  # Conditional Access Administrator
    '8ac3fc64-6eca-42ea-9e69-59f4c7b60eb2',  # Hybrid Identity Administrator
}

POLICY_STATES = ('enabled', 'disabled', 'enabledForReportingButNotEnforced')

def _join(values):
    return ';'.join(str(x) for x in (values or []))

class DirectoryDataDumper(DataDumper):

    def __init__(self, output_dir, reports_dir, context, driver, config, debug=False, dry_run=False):
        super().__init__(output_dir, reports_dir, context, driver, config, debug, dry_run)
        self.logger = setup_logger(__name__, debug)
        self._role_definitions = None

    def get_role_definitions(self):
        if self._role_definitions is None:
            query = Query(self.get_url('roleManagement/directory/roleDefinitions'),
                          select='id,displayName,templateId,isBuiltIn,isPrivileged')
            self._role_definitions = {x['id']: x for x in self.fetch(query)}
        return self._role_definitions

    def is_privileged(self, definition):
        if definition.get('isPrivileged') is not None:
            return bool(definition['isPrivileged'])
        return (definition.get('templateId') or definition.get('id')) in PRIVILEGED_ROLE_TEMPLATES

    def get_role_assignments(self, role_names=None, privileged_only=False, include_eligible=True):
        """Active and eligible directory role assignments.
        API Reference: https://learn.microsoft.com/en-us/graph/api/resources/unifiedroleassignment?view=graph-rest-beta

        :param role_names: Role display names to restrict to, queried in the order given
        :type role_names: list
        :param privileged_only: Keep only roles flagged as privileged
        :type privileged_only: bool
        :param include_eligible: Also pull PIM eligibility schedules
        :type include_eligible: bool
        """
        definitions = self.get_role_definitions()
        role_ids = []
        if role_names:
            by_name = {x.get('displayName', '').lower(): role_id for role_id, x in definitions.items()}
            for name in role_names:
                if name.lower() in by_name:
                    role_ids.append(by_name[name.lower()])
                else:
                    self.logger.warning(f"Role {name} not found in tenant. Skipping.")
            if not role_ids:
                return []

        sources = [('Active', 'roleManagement/directory/roleAssignments')]
        if include_eligible:
            sources.append(('Eligible', 'roleManagement/directory/roleEligibilitySchedules'))

        records = []
        for assignment_type, path in sources:
            def build_query(role_id, path=path):
                return Query(self.get_url(path + '?$expand=principal'),
                             filter='roleDefinitionId eq %s' % (odata_quote(role_id)) if role_id else None)

            def projection(record, assignment_type=assignment_type):
                return self.project_role_assignment(record, assignment_type, definitions)

            records.extend(self.fetch_each(role_ids, build_query, projection))

        if privileged_only:
            records = [x for x in records if x['isPrivileged']]
        return records

    def project_role_assignment(self, record, assignment_type, definitions):
        definition = definitions.get(record.get('roleDefinitionId'), {})
        principal = record.get('principal') or {}
        return {
            'roleName': definition.get('displayName', ''),
            'roleDefinitionId': record.get('roleDefinitionId'),
            'isPrivileged': self.is_privileged(definition) if definition else False,
            'assignmentType': assignment_type,
            'principalId': record.get('principalId'),
            'principalDisplayName': principal.get('displayName'),
            'principalUserPrincipalName': principal.get('userPrincipalName'),
            'principalType': (principal.get('@odata.type') or '').replace('#microsoft.graph.', ''),
            'directoryScopeId': record.get('directoryScopeId'),
            'memberType': record.get('memberType'),
            'startDateTime': normalize_timestamp((record.get('scheduleInfo') or {}).get('startDateTime')),
            'id': record.get('id'),
        }

    def dump_role_assignments(self):
        """
        Dump active and eligible directory role assignments
        """
        privileged_only = config_getbool(self.config, 'filters', 'privileged_only', self.logger)
        self.logger.info('Getting directory role assignments...')
        records = self.get_role_assignments(self.filter_ids('role_names'), privileged_only)
        self.write_records('role_assignments', records)
        self.logger.info('Finished dumping directory role assignments.')

    def get_service_principal_ids(self):
        query = Query(self.get_url('servicePrincipals'), select='id')
        return [x['id'] for x in self.fetch(query)]

    def get_permissions(self, service_principal_ids=None):
        """Delegated grants and application role assignments per service principal.
        API Reference: https://learn.microsoft.com/en-us/graph/api/resources/oauth2permissiongrant?view=graph-rest-beta

        Every service principal in the tenant is checked when no ids are given.
        """
        if not service_principal_ids:
            service_principal_ids = self.get_service_principal_ids()

        records = []
        for sp_id in service_principal_ids:
            client = self.lookup('servicePrincipals/' + sp_id, select='id,appId,displayName')
            records.extend(self.fetch(
                Query(self.get_url(f'servicePrincipals/{sp_id}/oauth2PermissionGrants')),
                lambda record: self.project_delegated_grant(record, client)))
            records.extend(self.fetch(
                Query(self.get_url(f'servicePrincipals/{sp_id}/appRoleAssignments')),
                lambda record: self.project_app_role_assignment(record, client)))
        return records

    def resolve_app_role(self, resource_id, app_role_id):
        resource = self.lookup('servicePrincipals/' + resource_id, select='id,displayName,appRoles') if resource_id else {}
        for role in resource.get('appRoles') or []:
            if role.get('id') == app_role_id:
                return role.get('value')
        return ''

    def project_delegated_grant(self, record, client):
        resource = self.lookup('servicePrincipals/' + record['resourceId'], select='id,displayName,appRoles') if record.get('resourceId') else {}
        principal = {}
        if record.get('principalId'):
            principal = self.lookup('users/' + record['principalId'], select='id,displayName,userPrincipalName')
        return {
            'permissionType': 'Delegated',
            'clientObjectId': record.get('clientId'),
            'clientAppId': client.get('appId'),
            'clientDisplayName': client.get('displayName'),
            'resourceObjectId': record.get('resourceId'),
            'resourceDisplayName': resource.get('displayName'),
            'permission': (record.get('scope') or '').strip(),
            'consentType': record.get('consentType'),
            'principalObjectId': record.get('principalId'),
            'principalDisplayName': principal.get('displayName'),
            'principalUserPrincipalName': principal.get('userPrincipalName'),
            'createdDateTime': '',
            'id': record.get('id'),
        }

    def project_app_role_assignment(self, record, client):
        return {
            'permissionType': 'Application',
            'clientObjectId': record.get('principalId'),
            'clientAppId': client.get('appId'),
            'clientDisplayName': client.get('displayName') or record.get('principalDisplayName'),
            'resourceObjectId': record.get('resourceId'),
            'resourceDisplayName': record.get('resourceDisplayName'),
            'permission': self.resolve_app_role(record.get('resourceId'), record.get('appRoleId')),
            'consentType': 'AllPrincipals',
            'principalObjectId': '',
            'principalDisplayName': '',
            'principalUserPrincipalName': '',
            'createdDateTime': normalize_timestamp(record.get('createdDateTime')),
            'id': record.get('id'),
        }

    def dump_permissions(self):
        """
        Dump delegated and application permissions granted to service principals
        """
        self.logger.info('Getting application permissions...')
        records = self.get_permissions(self.filter_ids('service_principal_ids'))
        self.write_records('permissions', records)
        self.logger.info('Finished dumping application permissions.')

    def get_domains(self, domain_names=None):
        """Registered domains, with federation settings for federated ones.
        API Reference: https://learn.microsoft.com/en-us/graph/api/resources/domain?view=graph-rest-beta
        """
        domains = self.fetch(Query(self.get_url('domains')), self.project_domain)
        if domain_names:
            by_name = {x['domain'].lower(): x for x in domains}
            selected = []
            for name in domain_names:
                if name.lower() in by_name:
                    selected.append(by_name[name.lower()])
                else:
                    self.logger.warning(f"Domain {name} is not registered in the tenant.")
            domains = selected
        return domains

    def project_domain(self, record):
        entry = {
            'domain': record.get('id'),
            'authenticationType': record.get('authenticationType'),
            'isVerified': record.get('isVerified'),
            'isDefault': record.get('isDefault'),
            'isRoot': record.get('isRoot'),
            'isAdminManaged': record.get('isAdminManaged'),
            'supportedServices': _join(record.get('supportedServices')),
            'passwordValidityPeriodInDays': record.get('passwordValidityPeriodInDays'),
            'issuerUri': '',
            'passiveSignInUri': '',
            'federatedIdpMfaBehavior': '',
        }
        if (record.get('authenticationType') or '').lower() == 'federated':
            federation = self.lookup_all(f"domains/{record['id']}/federationConfiguration")
            if federation:
                entry['issuerUri'] = federation[0].get('issuerUri', '')
                entry['passiveSignInUri'] = federation[0].get('passiveSignInUri', '')
                entry['federatedIdpMfaBehavior'] = federation[0].get('federatedIdpMfaBehavior', '')
        return entry

    def dump_domains(self):
        """
        Dump registered domains and their federation settings
        """
        self.logger.info('Getting domains...')
        self.write_records('domains', self.get_domains(self.filter_ids('domain_names')))
        self.logger.info('Finished dumping domains.')

    def get_mfa(self, user_ids=None):
        """Authentication method registration per user.
        API Reference: https://learn.microsoft.com/en-us/graph/api/resources/userregistrationdetails?view=graph-rest-beta
        """
        def build_query(user_id):
            return Query(self.get_url('reports/authenticationMethods/userRegistrationDetails'),
                         filter='id eq %s' % (odata_quote(user_id)) if user_id else None)

        return self.fetch_each(user_ids, build_query, self.project_mfa)

    def project_mfa(self, record):
        return {
            'userPrincipalName': record.get('userPrincipalName'),
            'userDisplayName': record.get('userDisplayName'),
            'isAdmin': record.get('isAdmin'),
            'isMfaRegistered': record.get('isMfaRegistered'),
            'isMfaCapable': record.get('isMfaCapable'),
            'isPasswordlessCapable': record.get('isPasswordlessCapable'),
            'isSsprRegistered': record.get('isSsprRegistered'),
            'methodsRegistered': _join(record.get('methodsRegistered')),
            'defaultMfaMethod': record.get('defaultMfaMethod'),
            'lastUpdatedDateTime': normalize_timestamp(record.get('lastUpdatedDateTime')),
            'id': record.get('id'),
        }

    def dump_mfa(self):
        """
        Dump MFA registration details for the configured users
        """
        self.logger.info('Getting MFA registration details...')
        self.write_records('mfa', self.get_mfa(self.filter_ids('user_ids')))
        self.logger.info('Finished dumping MFA registration details.')

    def get_conditional_access(self, state=None):
        """Conditional access policies, optionally only those in one state.
        API Reference: https://learn.microsoft.com/en-us/graph/api/resources/conditionalaccesspolicy?view=graph-rest-beta
        """
        if state and state not in POLICY_STATES:
            raise ValueError(f"Unknown policy state {state}. Expected one of {', '.join(POLICY_STATES)}")
        policies = self.fetch(Query(self.get_url('identity/conditionalAccess/policies')), self.project_policy)
        if state:
            policies = [x for x in policies if x['state'] == state]
        return policies

    def project_policy(self, record):
        conditions = record.get('conditions') or {}
        users = conditions.get('users') or {}
        apps = conditions.get('applications') or {}
        locations = conditions.get('locations') or {}
        platforms = conditions.get('platforms') or {}
        grant = record.get('grantControls') or {}
        session = record.get('sessionControls') or {}
        return {
            'displayName': record.get('displayName'),
            'state': record.get('state'),
            'createdDateTime': normalize_timestamp(record.get('createdDateTime')),
            'modifiedDateTime': normalize_timestamp(record.get('modifiedDateTime')),
            'includeUsers': _join(users.get('includeUsers')),
            'excludeUsers': _join(users.get('excludeUsers')),
            'includeGroups': _join(users.get('includeGroups')),
            'excludeGroups': _join(users.get('excludeGroups')),
            'includeRoles': _join(users.get('includeRoles')),
            'excludeRoles': _join(users.get('excludeRoles')),
            'includeApplications': _join(apps.get('includeApplications')),
            'excludeApplications': _join(apps.get('excludeApplications')),
            'clientAppTypes': _join(conditions.get('clientAppTypes')),
            'includeLocations': _join(locations.get('includeLocations')),
            'excludeLocations': _join(locations.get('excludeLocations')),
            'includePlatforms': _join(platforms.get('includePlatforms')),
            'signInRiskLevels': _join(conditions.get('signInRiskLevels')),
            'userRiskLevels': _join(conditions.get('userRiskLevels')),
            'grantOperator': grant.get('operator'),
            'builtInControls': _join(grant.get('builtInControls')),
            'sessionControls': _join(sorted(k for k, v in session.items() if v)),
            'id': record.get('id'),
        }

    def dump_conditional_access(self):
        """
        Dump conditional access policies
        """
        state = config_get(self.config, 'filters', 'policy_state', self.logger) or None
        self.logger.info('Getting conditional access policies...')
        self.write_records('conditional_access', self.get_conditional_access(state))
        self.logger.info('Finished dumping conditional access policies.')
