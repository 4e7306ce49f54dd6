import json
import os

import pytest

from conftest import RouteSession, error, page
from entrair.directory_datadumper import DirectoryDataDumper
from entrair.errors import InvalidQuery, PermissionDenied
from entrair.logs_datadumper import LogsDataDumper


@pytest.fixture
def build(tmp_path, context, make_driver, make_config):
    def _build(dumper_class, routes, config_text=""):
        session = RouteSession(routes)
        dumper = dumper_class(str(tmp_path), str(tmp_path), context, make_driver(session), make_config(config_text))
        return dumper, session
    return _build


def by_user(records_by_user):
    """Route that answers with the records of whichever user the $filter names."""
    def route(url):
        for user_id, records in records_by_user.items():
            if f"'{user_id}'" in url:
                return page(records)
        return page([])
    return route


SIGNIN = {
    "id": "s1", "createdDateTime": "2024-03-09T08:15:30.1234567Z", "userPrincipalName": "adele@contoso.com",
    "userDisplayName": "Adele Vance", "userId": "u1", "appDisplayName": "Azure Portal", "ipAddress": "203.0.113.7",
    "status": {"errorCode": 50126, "failureReason": "Invalid username or password"},
    "location": {"city": "Redmond", "state": "Washington", "countryOrRegion": "US"},
    "deviceDetail": {"operatingSystem": "Windows10", "browser": "Edge 122.0"},
}


class TestSignins:

    def test_one_query_per_user_in_input_order(self, build):
        dumper, session = build(LogsDataDumper, {"auditLogs/signIns": by_user({
            "u1": [dict(SIGNIN, id="s1"), dict(SIGNIN, id="s2")],
            "u2": [dict(SIGNIN, id="s3", userId="u2")],
        })})
        result = dumper.get_signins(["u2", "u1", "u2"], 0, 7, status="failure")

        assert [x["id"] for x in result] == ["s3", "s1", "s2", "s3"]
        assert len(session.calls) == 3
        first = session.calls[0]["url"]
        assert "userId%20eq%20'u2'" in first
        assert "status/errorCode%20ne%200" in first
        assert "$orderby=createdDateTime%20desc" in first

    def test_projection_flattens(self, build):
        dumper, _ = build(LogsDataDumper, {"auditLogs/signIns": page([SIGNIN])})
        record = dumper.get_signins()[0]
        assert record["createdDateTime"] == "2024-03-09T08:15:30Z"
        assert record["errorCode"] == 50126
        assert record["city"] == "Redmond"
        assert record["browser"] == "Edge 122.0"
        assert record["deviceId"] is None

    def test_all_users_when_no_ids(self, build):
        dumper, session = build(LogsDataDumper, {"auditLogs/signIns": page([SIGNIN])})
        dumper.get_signins()
        assert "$filter" not in session.calls[0]["url"]

    def test_unknown_status(self, build):
        dumper, _ = build(LogsDataDumper, {})
        with pytest.raises(ValueError):
            dumper.get_signins(status="blocked")

    def test_permission_denied_aborts_report(self, build):
        dumper, session = build(LogsDataDumper, {"auditLogs/signIns": error(403, "Authentication_RequestFromNonPremiumTenantOrB2CTenant")})
        with pytest.raises(PermissionDenied):
            dumper.get_signins(["u1", "u2"])
        assert len(session.calls) == 1

    def test_dump_signins_reads_config(self, build, tmp_path):
        dumper, session = build(LogsDataDumper, {"auditLogs/signIns": page([SIGNIN])},
                                "[filters]\nuser_ids=u1\nrange_from_days_ago=3\nrange_to_days_ago=1\nsignin_status=all\n")
        dumper.dump_signins()
        url = session.calls[0]["url"]
        assert "userId%20eq%20'u1'" in url
        assert "createdDateTime%20ge%20" in url
        assert "createdDateTime%20le%20" in url
        with open(os.path.join(tmp_path, "signins.json")) as f:
            assert json.loads(f.readline())["id"] == "s1"


AUDIT = {
    "id": "a1", "activityDateTime": "2024-03-09T10:00:00Z", "activityDisplayName": "Add member to role",
    "category": "RoleManagement", "result": "success",
    "initiatedBy": {"user": {"id": "u1", "displayName": None, "userPrincipalName": None, "ipAddress": "203.0.113.7"}},
    "targetResources": [
        {"id": "u2", "type": "User", "displayName": None, "userPrincipalName": None},
        {"id": "r1", "type": "Role", "displayName": "Global Administrator"},
    ],
}


class TestAudits:

    def test_secondary_lookups_resolve_users(self, build):
        dumper, session = build(LogsDataDumper, {
            "auditLogs/directoryAudits": page([AUDIT]),
            "users/u1": page([{"id": "u1", "displayName": "Megan Bowen", "userPrincipalName": "megan@contoso.com"}]),
            "users/u2": page([{"id": "u2", "displayName": "Adele Vance", "userPrincipalName": "adele@contoso.com"}]),
        })
        record = dumper.get_audits(["u1"], result="success")[0]

        assert record["initiatedByUserDisplayName"] == "Megan Bowen"
        assert record["initiatedByUserPrincipalName"] == "megan@contoso.com"
        assert record["initiatedByIpAddress"] == "203.0.113.7"
        assert record["targetResources"] == [
            {"id": "u2", "type": "User", "displayName": "Adele Vance"},
            {"id": "r1", "type": "Role", "displayName": "Global Administrator"},
        ]
        assert "initiatedBy/user/id%20eq%20'u1'" in session.calls[0]["url"]
        assert "result%20eq%20'success'" in session.calls[0]["url"]

    def test_failed_lookup_leaves_fields_blank(self, build):
        dumper, _ = build(LogsDataDumper, {
            "auditLogs/directoryAudits": page([AUDIT, dict(AUDIT, id="a2")]),
            "users/u1": error(404, "Request_ResourceNotFound"),
            "users/u2": error(403),
        })
        result = dumper.get_audits()

        assert [x["id"] for x in result] == ["a1", "a2"]
        assert result[0]["initiatedByUserDisplayName"] is None
        assert result[0]["targetResources"][0]["displayName"] == ""

    def test_lookups_cached(self, build):
        dumper, session = build(LogsDataDumper, {
            "auditLogs/directoryAudits": page([AUDIT, dict(AUDIT, id="a2")]),
            "users/u1": page([{"id": "u1", "displayName": "Megan Bowen"}]),
            "users/u2": page([{"id": "u2", "displayName": "Adele Vance"}]),
        })
        dumper.get_audits()
        assert session.paths().count("users/u1") == 1

    def test_invalid_result(self, build):
        dumper, _ = build(LogsDataDumper, {})
        with pytest.raises(ValueError):
            dumper.get_audits(result="maybe")

    def test_bad_category_is_invalid_query(self, build):
        dumper, _ = build(LogsDataDumper, {"auditLogs/directoryAudits": error(400, "BadRequest", "Invalid filter clause")})
        with pytest.raises(InvalidQuery):
            dumper.get_audits(category="Nope")


class TestInactiveUsers:

    def test_advanced_query_headers(self, build):
        dumper, session = build(LogsDataDumper, {"users": page([{
            "id": "u1", "displayName": "Adele Vance", "userPrincipalName": "adele@contoso.com",
            "signInActivity": {"lastSignInDateTime": "2023-12-01T00:00:00Z"}}])})
        result = dumper.get_inactive_users(90)

        assert result[0]["lastSignInDateTime"] == "2023-12-01T00:00:00Z"
        assert result[0]["lastNonInteractiveSignInDateTime"] == ""
        assert session.calls[0]["headers"]["ConsistencyLevel"] == "eventual"
        assert "$count=true" in session.calls[0]["url"]
        assert "ConsistencyLevel" not in dumper.context.header


ROLE_DEFINITIONS = [
    {"id": "62e90394-69f5-4237-9190-012177145e10", "displayName": "Global Administrator",
     "templateId": "62e90394-69f5-4237-9190-012177145e10", "isPrivileged": True},
    {"id": "88d8e3e3-8f55-4a1e-953a-9b9898b8876b", "displayName": "Directory Readers",
     "templateId": "88d8e3e3-8f55-4a1e-953a-9b9898b8876b", "isPrivileged": False},
    {"id": "e8611ab8-c189-46e8-94e1-60213ab1f814", "displayName": "Privileged Role Administrator",
     "templateId": "e8611ab8-c189-46e8-94e1-60213ab1f814"},
]

ASSIGNMENTS = [
    {"id": "ra1", "roleDefinitionId": "62e90394-69f5-4237-9190-012177145e10", "principalId": "u1", "directoryScopeId": "/",
     "principal": {"@odata.type": "#microsoft.graph.user", "displayName": "Megan Bowen", "userPrincipalName": "megan@contoso.com"}},
    {"id": "ra2", "roleDefinitionId": "88d8e3e3-8f55-4a1e-953a-9b9898b8876b", "principalId": "sp1", "directoryScopeId": "/",
     "principal": {"@odata.type": "#microsoft.graph.servicePrincipal", "displayName": "Backup Agent"}},
]

ELIGIBLE = [
    {"id": "es1", "roleDefinitionId": "e8611ab8-c189-46e8-94e1-60213ab1f814", "principalId": "u2", "directoryScopeId": "/",
     "memberType": "Direct", "scheduleInfo": {"startDateTime": "2024-01-01T00:00:00Z"},
     "principal": {"@odata.type": "#microsoft.graph.user", "displayName": "Adele Vance"}},
]


class TestRoleAssignments:

    def routes(self):
        return {
            "roleManagement/directory/roleDefinitions": page(ROLE_DEFINITIONS),
            "roleManagement/directory/roleAssignments": page(ASSIGNMENTS),
            "roleManagement/directory/roleEligibilitySchedules": page(ELIGIBLE),
        }

    def test_active_then_eligible(self, build):
        dumper, _ = build(DirectoryDataDumper, self.routes())
        result = dumper.get_role_assignments()

        assert [(x["id"], x["assignmentType"]) for x in result] == [("ra1", "Active"), ("ra2", "Active"), ("es1", "Eligible")]
        assert result[0]["roleName"] == "Global Administrator"
        assert result[0]["principalType"] == "user"
        assert result[1]["principalType"] == "servicePrincipal"
        assert result[2]["startDateTime"] == "2024-01-01T00:00:00Z"

    def test_privileged_only_falls_back_to_templates(self, build):
        dumper, _ = build(DirectoryDataDumper, self.routes())
        result = dumper.get_role_assignments(privileged_only=True)
        assert [x["id"] for x in result] == ["ra1", "es1"]

    def test_role_names_filter(self, build):
        dumper, session = build(DirectoryDataDumper, self.routes())
        dumper.get_role_assignments(["global administrator", "Unknown Role"], include_eligible=False)

        assignment_urls = [x["url"] for x in session.calls if "roleAssignments" in x["url"]]
        assert len(assignment_urls) == 1
        assert "$expand=principal" in assignment_urls[0]
        assert "roleDefinitionId%20eq%20'62e90394-69f5-4237-9190-012177145e10'" in assignment_urls[0]

    def test_no_known_roles(self, build):
        dumper, _ = build(DirectoryDataDumper, self.routes())
        assert dumper.get_role_assignments(["Unknown Role"]) == []


class TestPermissions:

    def routes(self):
        return {
            "servicePrincipals": page([{"id": "sp1"}, {"id": "sp2"}]),
            "servicePrincipals/sp1": page([{"id": "sp1", "appId": "app-1", "displayName": "Mail Sync"}]),
            "servicePrincipals/sp2": page([{"id": "sp2", "appId": "app-2", "displayName": "Reporting"}]),
            "servicePrincipals/graph": page([{"id": "graph", "displayName": "Microsoft Graph",
                                              "appRoles": [{"id": "role-1", "value": "Mail.Read"}]}]),
            "users/u1": page([{"id": "u1", "displayName": "Adele Vance", "userPrincipalName": "adele@contoso.com"}]),
            "servicePrincipals/sp1/oauth2PermissionGrants": page([
                {"id": "g1", "clientId": "sp1", "consentType": "Principal", "principalId": "u1",
                 "resourceId": "graph", "scope": " User.Read Mail.Read "}]),
            "servicePrincipals/sp1/appRoleAssignments": page([
                {"id": "ar1", "principalId": "sp1", "resourceId": "graph", "resourceDisplayName": "Microsoft Graph",
                 "appRoleId": "role-1", "createdDateTime": "2024-02-01T00:00:00Z"}]),
            "servicePrincipals/sp2/oauth2PermissionGrants": page([]),
            "servicePrincipals/sp2/appRoleAssignments": page([
                {"id": "ar2", "principalId": "sp2", "resourceId": "graph", "appRoleId": "role-unknown"}]),
        }

    def test_all_service_principals(self, build):
        dumper, _ = build(DirectoryDataDumper, self.routes())
        result = dumper.get_permissions()

        assert [(x["id"], x["permissionType"]) for x in result] == [("g1", "Delegated"), ("ar1", "Application"), ("ar2", "Application")]
        delegated = result[0]
        assert delegated["permission"] == "User.Read Mail.Read"
        assert delegated["resourceDisplayName"] == "Microsoft Graph"
        assert delegated["principalUserPrincipalName"] == "adele@contoso.com"
        assert delegated["clientAppId"] == "app-1"
        assert result[1]["permission"] == "Mail.Read"
        assert result[2]["permission"] == ""
        assert result[2]["clientDisplayName"] == "Reporting"

    def test_selected_service_principals(self, build):
        dumper, session = build(DirectoryDataDumper, self.routes())
        result = dumper.get_permissions(["sp2"])
        assert [x["id"] for x in result] == ["ar2"]
        assert "servicePrincipals" not in session.paths()

    def test_failed_resource_lookup_is_not_fatal(self, build):
        routes = self.routes()
        routes["servicePrincipals/graph"] = error(403)
        dumper, _ = build(DirectoryDataDumper, routes)
        result = dumper.get_permissions(["sp1"])
        assert result[0]["resourceDisplayName"] is None
        assert result[1]["permission"] == ""


class TestDomains:

    def routes(self):
        return {
            "domains": page([
                {"id": "contoso.com", "authenticationType": "Federated", "isVerified": True, "isDefault": True,
                 "supportedServices": ["Email", "OfficeCommunicationsOnline"]},
                {"id": "contoso.onmicrosoft.com", "authenticationType": "Managed", "isVerified": True},
            ]),
            "domains/contoso.com/federationConfiguration": page([
                {"issuerUri": "http://adfs.contoso.com/adfs/services/trust",
                 "passiveSignInUri": "https://adfs.contoso.com/adfs/ls/", "federatedIdpMfaBehavior": "acceptIfMfaDoneByFederatedIdp"}]),
        }

    def test_federation_details(self, build):
        dumper, session = build(DirectoryDataDumper, self.routes())
        result = dumper.get_domains()

        assert result[0]["issuerUri"] == "http://adfs.contoso.com/adfs/services/trust"
        assert result[0]["supportedServices"] == "Email;OfficeCommunicationsOnline"
        assert result[1]["issuerUri"] == ""
        assert session.paths().count("domains/contoso.com/federationConfiguration") == 1

    def test_selected_domains_in_input_order(self, build):
        dumper, _ = build(DirectoryDataDumper, self.routes())
        result = dumper.get_domains(["CONTOSO.onmicrosoft.com", "fabrikam.com", "contoso.com"])
        assert [x["domain"] for x in result] == ["contoso.onmicrosoft.com", "contoso.com"]


class TestMfa:

    def test_per_user(self, build):
        dumper, session = build(DirectoryDataDumper, {"reports/authenticationMethods/userRegistrationDetails": by_user({
            "u1": [{"id": "u1", "userPrincipalName": "adele@contoso.com", "isMfaRegistered": True,
                    "methodsRegistered": ["microsoftAuthenticatorPush", "softwareOneTimePasscode"]}],
            "u2": [{"id": "u2", "userPrincipalName": "megan@contoso.com", "isMfaRegistered": False, "methodsRegistered": []}],
        })})
        result = dumper.get_mfa(["u1", "u2"])

        assert [x["userPrincipalName"] for x in result] == ["adele@contoso.com", "megan@contoso.com"]
        assert result[0]["methodsRegistered"] == "microsoftAuthenticatorPush;softwareOneTimePasscode"
        assert result[1]["methodsRegistered"] == ""
        assert "id%20eq%20'u1'" in session.calls[0]["url"]


POLICIES = [
    {"id": "p1", "displayName": "Require MFA for admins", "state": "enabled",
     "conditions": {"users": {"includeRoles": ["62e90394-69f5-4237-9190-012177145e10"], "excludeUsers": ["breakglass"]},
                    "applications": {"includeApplications": ["All"]}, "clientAppTypes": ["all"]},
     "grantControls": {"operator": "OR", "builtInControls": ["mfa"]},
     "sessionControls": {"signInFrequency": {"value": 4}, "persistentBrowser": None}},
    {"id": "p2", "displayName": "Block legacy auth", "state": "enabledForReportingButNotEnforced",
     "conditions": {"clientAppTypes": ["exchangeActiveSync", "other"]},
     "grantControls": {"operator": "OR", "builtInControls": ["block"]}, "sessionControls": None},
]


class TestConditionalAccess:

    def test_projection(self, build):
        dumper, _ = build(DirectoryDataDumper, {"identity/conditionalAccess/policies": page(POLICIES)})
        result = dumper.get_conditional_access()

        assert result[0]["includeRoles"] == "62e90394-69f5-4237-9190-012177145e10"
        assert result[0]["excludeUsers"] == "breakglass"
        assert result[0]["builtInControls"] == "mfa"
        assert result[0]["sessionControls"] == "signInFrequency"
        assert result[1]["clientAppTypes"] == "exchangeActiveSync;other"
        assert result[1]["sessionControls"] == ""

    def test_state_filter(self, build):
        dumper, _ = build(DirectoryDataDumper, {"identity/conditionalAccess/policies": page(POLICIES)})
        assert [x["id"] for x in dumper.get_conditional_access("enabled")] == ["p1"]
        with pytest.raises(ValueError):
            dumper.get_conditional_access("on")


class ExpiringTokenSession(RouteSession):
    """Accepts the first token for one request, then rejects it as expired."""

    def __init__(self, routes, token_provider):
        super().__init__(routes)
        self.token_provider = token_provider
        self.expired = set()

    def get(self, url, headers=None, timeout=None):
        authorization = (headers or {}).get("Authorization")
        if authorization in self.expired:
            self.calls.append({"url": url, "headers": dict(headers)})
            return error(401, "InvalidAuthenticationToken", "Lifetime validation failed, the token is expired.")
        response = super().get(url, headers, timeout)
        if authorization == "Bearer token-1":
            self.expired.add(authorization)
            self.token_provider.expire()
        return response


class TestTokenRenewal:

    @pytest.fixture
    def expiring(self, tmp_path, context, token_provider, make_driver, make_config):
        def _build(dumper_class, routes):
            session = ExpiringTokenSession(routes, token_provider)
            dumper = dumper_class(str(tmp_path), str(tmp_path), context, make_driver(session), make_config())
            return dumper, session
        return _build

    def test_each_query_gets_a_current_token(self, expiring, token_provider):
        dumper, session = expiring(LogsDataDumper, {"auditLogs/signIns": by_user({
            "u1": [dict(SIGNIN, id="s1")],
            "u2": [dict(SIGNIN, id="s2", userId="u2")],
        })})
        result = dumper.get_signins(["u1", "u2"])

        assert [x["id"] for x in result] == ["s1", "s2"]
        assert [x["headers"]["Authorization"] for x in session.calls] == ["Bearer token-1", "Bearer token-2"]
        assert token_provider.forced_calls == []
        assert token_provider.interactive_calls == []

    def test_lookup_after_expiry(self, expiring):
        dumper, session = expiring(LogsDataDumper, {
            "auditLogs/directoryAudits": page([AUDIT]),
            "users/u1": page([{"id": "u1", "displayName": "Megan Bowen"}]),
            "users/u2": page([{"id": "u2", "displayName": "Adele Vance"}]),
        })
        record = dumper.get_audits()[0]

        assert record["initiatedByUserDisplayName"] == "Megan Bowen"
        assert record["targetResources"][0]["displayName"] == "Adele Vance"
        assert all(x["headers"]["Authorization"] == "Bearer token-2" for x in session.calls[1:])

    def test_inactive_users_query_renews(self, expiring, token_provider):
        dumper, session = expiring(LogsDataDumper, {"users": [page([]), page([{"id": "u1"}])]})
        dumper.get_inactive_users(30)
        dumper.get_inactive_users(30)

        assert session.calls[1]["headers"]["Authorization"] == "Bearer token-2"
        assert session.calls[1]["headers"]["ConsistencyLevel"] == "eventual"
