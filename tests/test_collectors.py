import asyncio
from datetime import datetime, timezone

import httpx

from conftest import json_response
from m365_admin_toolkit.collectors import (
    PasswordExpiryCollector,
    SsoAppCollector,
    SsoUsageCollector,
    parse_graph_datetime,
)
from m365_admin_toolkit.collectors.password_expiry import password_expiry_row
from m365_admin_toolkit.collectors.sso_apps import signing_cert_expiry, sso_app_row
from m365_admin_toolkit.collectors.sso_usage import summarize_sign_ins
from m365_admin_toolkit.config import ReportConfig
from m365_admin_toolkit.graph.client import GraphClient
from m365_admin_toolkit.safety.guardian import SafetyGuardian

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def run_collector(handler, build):
    async def go():
        async with GraphClient("token", SafetyGuardian(), transport=httpx.MockTransport(handler)) as graph:
            return await build(graph).execute()
    return asyncio.run(go())


# ─── parse_graph_datetime ────────────────────────────────────────────────────

def test_parse_graph_datetime_variants():
    assert parse_graph_datetime("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    parsed = parse_graph_datetime("2024-05-01T10:00:00.1234567Z")
    assert parsed.microsecond == 123456
    assert parse_graph_datetime("2024-05-01T10:00:00").tzinfo == timezone.utc
    assert parse_graph_datetime("") is None
    assert parse_graph_datetime("not a date") is None


# ─── password expiry ─────────────────────────────────────────────────────────

def test_password_row_uses_domain_validity():
    user = {"userPrincipalName": "alice@x.com", "lastPasswordChangeDateTime": "2024-05-01T12:00:00Z",
            "accountEnabled": True}
    row = password_expiry_row(user, {"x.com": 45}, NOW)

    assert row["validityDays"] == 45
    assert row["passwordExpires"] == "2024-06-15T12:00:00+00:00"
    assert row["daysRemaining"] == 14
    assert row["expiringSoon"] is True
    assert row["expired"] is False
    assert row["neverExpires"] is False


def test_password_row_defaults_to_ninety_days():
    user = {"userPrincipalName": "bob@other.com", "lastPasswordChangeDateTime": "2024-01-01T12:00:00Z"}
    row = password_expiry_row(user, {}, NOW)
    assert row["validityDays"] == 90
    assert row["expired"] is True
    assert row["daysRemaining"] < 0


def test_password_never_expires_by_policy_or_domain():
    user = {"userPrincipalName": "svc@x.com", "passwordPolicies": "DisablePasswordExpiration",
            "lastPasswordChangeDateTime": "2020-01-01T00:00:00Z"}
    row = password_expiry_row(user, {"x.com": 90}, NOW)
    assert row["neverExpires"] is True
    assert row["passwordExpires"] == ""
    assert row["daysRemaining"] is None
    assert row["expired"] is False

    user = {"userPrincipalName": "carol@x.com", "lastPasswordChangeDateTime": "2020-01-01T00:00:00Z"}
    row = password_expiry_row(user, {"x.com": 2147483647}, NOW)
    assert row["neverExpires"] is True


def test_password_collector_reads_domains_and_skips_disabled():
    def handler(request):
        path = request.url.path
        if path.endswith("/domains"):
            assert "$top" not in request.url.params
            return json_response({"value": [{"id": "X.com", "passwordValidityPeriodInDays": 30}]})
        if path.endswith("/users"):
            return json_response({"value": [
                {"userPrincipalName": "alice@x.com", "accountEnabled": True,
                 "lastPasswordChangeDateTime": "2024-05-20T12:00:00Z"},
                {"userPrincipalName": "old@x.com", "accountEnabled": False,
                 "lastPasswordChangeDateTime": "2023-01-01T00:00:00Z"},
                {"userPrincipalName": "bob@x.com", "accountEnabled": True,
                 "lastPasswordChangeDateTime": "2024-05-05T12:00:00Z"},
            ]})
        return httpx.Response(404)

    result = run_collector(handler, lambda g: PasswordExpiryCollector(g, ReportConfig(), now=NOW))

    assert result.ok
    assert [r["userPrincipalName"] for r in result.rows] == ["bob@x.com", "alice@x.com"]
    assert result.rows[0]["daysRemaining"] == 3
    assert result.data["domains"] == [{"id": "x.com", "passwordValidityPeriodInDays": 30}]


def test_password_collector_single_user_not_found():
    def handler(request):
        if request.url.path.endswith("/domains"):
            return json_response({"value": []})
        return httpx.Response(404)

    result = run_collector(handler, lambda g: PasswordExpiryCollector(g, user="ghost@x.com", now=NOW))

    assert not result.ok
    assert "User not found: ghost@x.com" in result.metadata["errors"]


# ─── SSO usage ───────────────────────────────────────────────────────────────

def sign_in(app_id, name, when, error_code=0, reason="", client="Browser"):
    return {
        "appId": app_id,
        "appDisplayName": name,
        "resourceDisplayName": "Resource",
        "createdDateTime": when,
        "clientAppUsed": client,
        "status": {"errorCode": error_code, "failureReason": reason},
    }


def test_summarize_sign_ins_groups_per_app():
    rows = summarize_sign_ins([
        sign_in("app-1", "Salesforce", "2024-05-30T09:00:00Z"),
        sign_in("app-1", "Salesforce", "2024-05-31T09:00:00Z", 50126, "Invalid password"),
        sign_in("app-2", "Slack", "2024-05-20T09:00:00Z", client="Mobile Apps and Desktop clients"),
        sign_in("app-1", "Salesforce", "2024-05-29T09:00:00Z"),
    ])

    assert [r["appDisplayName"] for r in rows] == ["Salesforce", "Slack"]
    salesforce = rows[0]
    assert salesforce["signInCount"] == 3
    assert salesforce["successCount"] == 2
    assert salesforce["failureCount"] == 1
    assert salesforce["lastSignIn"] == "2024-05-31T09:00:00+00:00"
    assert salesforce["lastStatus"] == "Invalid password"
    assert rows[1]["lastStatus"] == "Success"
    assert rows[1]["clientApps"] == "Mobile Apps and Desktop clients"


def test_summarize_sign_ins_empty():
    assert summarize_sign_ins([]) == []


def test_sso_usage_collector_filters_by_user_and_window():
    captured = {}

    def handler(request):
        captured["filter"] = request.url.params["$filter"]
        return json_response({"value": [sign_in("app-1", "Salesforce", "2024-05-30T09:00:00Z")]})

    result = run_collector(
        handler, lambda g: SsoUsageCollector(g, "o'neil@x.com", ReportConfig(), days=7, now=NOW)
    )

    assert captured["filter"] == (
        "userPrincipalName eq 'o''neil@x.com' and createdDateTime ge 2024-05-25T12:00:00Z"
    )
    assert result.metadata["sign_in_records"] == 1
    assert result.metadata["window_days"] == 7
    assert result.rows[0]["appId"] == "app-1"


def test_sso_usage_missing_permission_is_an_error():
    def handler(request):
        return json_response({"error": {"message": "Insufficient privileges"}}, status_code=403)

    result = run_collector(handler, lambda g: SsoUsageCollector(g, "a@x.com", now=NOW))

    assert not result.ok
    assert result.rows == []
    assert "requires AuditLog.Read.All" in result.metadata["errors"][0]


# ─── SSO applications ────────────────────────────────────────────────────────

def test_signing_cert_expiry_prefers_graph_value():
    assert signing_cert_expiry({"preferredTokenSigningKeyEndDateTime": "2025-01-01T00:00:00Z"}) == (
        "2025-01-01T00:00:00Z"
    )
    sp = {"keyCredentials": [
        {"usage": "Verify", "endDateTime": "2026-03-01T00:00:00Z"},
        {"usage": "Sign", "endDateTime": "2025-03-01T00:00:00Z"},
        {"usage": "Encrypt", "endDateTime": "2024-03-01T00:00:00Z"},
    ]}
    assert signing_cert_expiry(sp) == "2025-03-01T00:00:00+00:00"
    assert signing_cert_expiry({}) is None


def test_sso_app_row():
    row = sso_app_row({
        "id": "sp-1", "appId": "app-1", "displayName": "Workday",
        "preferredSingleSignOnMode": "saml", "loginUrl": None, "homepage": "https://wd.example",
        "accountEnabled": True, "appRoleAssignmentRequired": True,
        "notificationEmailAddresses": ["it@x.com", "sec@x.com"],
    })
    assert row["loginUrl"] == "https://wd.example"
    assert row["notificationEmails"] == "it@x.com; sec@x.com"
    assert row["signingCertExpiry"] == ""
    assert row["servicePrincipalId"] == "sp-1"


def test_sso_app_collector_keeps_sso_modes_only():
    def handler(request):
        assert "WindowsAzureActiveDirectoryIntegratedApp" in request.url.params["$filter"]
        return json_response({"value": [
            {"id": "1", "displayName": "zeta", "preferredSingleSignOnMode": "saml"},
            {"id": "2", "displayName": "Alpha", "preferredSingleSignOnMode": "password"},
            {"id": "3", "displayName": "Legacy", "preferredSingleSignOnMode": "notSupported"},
            {"id": "4", "displayName": "Plain", "preferredSingleSignOnMode": None},
        ]})

    result = run_collector(handler, lambda g: SsoAppCollector(g))

    assert [r["displayName"] for r in result.rows] == ["Alpha", "zeta"]
