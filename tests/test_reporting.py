import csv
import json

from m365_admin_toolkit import __version__
from m365_admin_toolkit.mailbox.models import (
    ActionKind,
    GroupMembershipSnapshot,
    PermissionScope,
    SyncAction,
    SyncResult,
)
from m365_admin_toolkit.reporting import REPORT_FIELDS, export_csv, export_json


def test_csv_has_bom_and_report_columns(tmp_path):
    rows = [{
        "displayName": "Workday",
        "appId": "app-1",
        "ssoMode": "saml",
        "notificationEmails": "it@x.com",
        "accountEnabled": True,
        "signingCertExpiry": None,
        "unexpected": "ignored",
    }]

    path = export_csv(rows, tmp_path, "sso_apps", "run1")

    assert path.name == "sso_apps_run1.csv"
    raw = path.read_bytes()
    assert raw.startswith(b"\xef\xbb\xbf")
    with open(path, encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        assert reader.fieldnames == REPORT_FIELDS["sso_apps"]
        record = next(reader)
    assert record["displayName"] == "Workday"
    assert record["signingCertExpiry"] == ""
    assert record["accountEnabled"] == "True"


def test_csv_joins_list_cells(tmp_path):
    path = export_csv([{"key": "a", "etag": ["x", "y"]}], tmp_path, "s3_objects", "r")
    with open(path, encoding="utf-8-sig", newline="") as fh:
        record = next(csv.DictReader(fh))
    assert record["etag"] == "x; y"


def test_json_wraps_result_with_metadata(tmp_path):
    result = SyncResult(
        group="sales",
        mailbox="sales@x.com",
        snapshot=GroupMembershipSnapshot.from_lists(["alice@x.com"], ["bob@x.com"]),
    )
    result.record(SyncAction(ActionKind.GRANT, "alice@x.com", "FullAccess", PermissionScope.MAILBOX))

    path = export_json(result.to_dict(), tmp_path, "mailbox_sync", "run1", {"dry_run": False})

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["metadata"]["version"] == __version__
    assert document["metadata"]["report"] == "mailbox_sync"
    assert document["metadata"]["dry_run"] is False
    assert document["result"]["owners"] == ["alice@x.com"]
    assert document["result"]["summary"]["granted"] == 1
    assert document["result"]["actions"][0]["kind"] == "grant"
