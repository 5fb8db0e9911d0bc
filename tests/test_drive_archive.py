# tests/test_drive_archive.py
import threading
from datetime import date

import pytest
from googleapiclient.errors import HttpError

from expense_bot.google.drive import (
    FOLDER_MIME_TYPE,
    FolderProvisioner,
    ReceiptArchiver,
    build_receipt_name,
    is_benign_permission_error,
    resolve_extension,
    sanitize_summary,
)
from expense_bot.schemas import ReceiptMeta
from conftest import make_http_error


def make_meta(**overrides):
    data = dict(
        request_id="EXP-20250912-AB12",
        usage_date=date(2025, 9, 12),
        applicant_name="Taro",
        amount=3500,
        currency="JPY",
        summary="Lunch",
        original_filename="IMG_0001.png",
    )
    data.update(overrides)
    return ReceiptMeta(**data)


def test_sanitize_summary_strips_symbols_and_truncates():
    assert sanitize_summary("Lunch / dinner!!", 20) == "Lunch  dinner"
    assert sanitize_summary("交通費（タクシー）", 20) == "交通費タクシー"
    assert sanitize_summary("a" * 30, 20) == "a" * 20
    assert sanitize_summary("!!!", 20) == "expense"


def test_resolve_extension_prefers_original_filename():
    assert resolve_extension("image/jpeg", "scan.PDF") == ".PDF"
    assert resolve_extension("image/jpeg", "no-extension") == ".jpg"
    assert resolve_extension("application/pdf", None) == ".pdf"
    assert resolve_extension("application/zip", None) == ""


def test_build_receipt_name():
    assert build_receipt_name(make_meta(), "image/png", 20) == "20250912_Taro_3,500JPY_Lunch.png"
    name = build_receipt_name(make_meta(amount=1234567.5, original_filename=None), "application/pdf", 20)
    assert name == "20250912_Taro_1,234,567.5JPY_Lunch.pdf"


def test_ensure_path_is_idempotent(drive):
    provisioner = FolderProvisioner(drive)
    first = provisioner.ensure_path("root-folder", 2025, 9)
    second = provisioner.ensure_path("root-folder", 2025, 9)
    assert first == second

    years = drive.children("root-folder", "2025")
    assert len(years) == 1
    year_id = years[0][0]
    months = drive.children(year_id, "09")
    assert [m[0] for m in months] == [first]
    assert months[0][1]["mimeType"] == FOLDER_MIME_TYPE


def test_ensure_path_concurrent_callers_create_each_folder_once(drive):
    drive.list_delay = 0.01
    provisioner = FolderProvisioner(drive)
    results = []

    def worker():
        results.append(provisioner.ensure_path("root-folder", 2025, 9))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert len(drive.children("root-folder", "2025")) == 1
    year_id = drive.children("root-folder", "2025")[0][0]
    assert len(drive.children(year_id, "09")) == 1


def test_shared_drive_listing_parameters(drive):
    FolderProvisioner(drive, shared_drive_id="shared-1").ensure_folder("root-folder", "2025")
    params = drive.list_params[-1]
    assert params["driveId"] == "shared-1"
    assert params["corpora"] == "drive"
    assert params["supportsAllDrives"] is True
    assert params["includeItemsFromAllDrives"] is True


def test_upload_places_file_in_month_folder(drive):
    archiver = ReceiptArchiver(drive, FolderProvisioner(drive), "root-folder")
    uploaded = archiver.upload(b"pdf-bytes", "application/pdf", make_meta(original_filename="r.pdf"))

    item = drive.items[uploaded.file_id]
    assert item["name"] == "20250912_Taro_3,500JPY_Lunch.pdf"
    assert item["parents"] == [uploaded.folder_id]
    assert item["content"] == b"pdf-bytes"
    assert uploaded.link == f"https://drive.google.com/file/d/{uploaded.file_id}/view"
    assert drive.permissions_granted == []


def test_upload_grants_domain_access(drive):
    archiver = ReceiptArchiver(drive, FolderProvisioner(drive), "root-folder", sharing_domain="example.com")
    uploaded = archiver.upload(b"x", "image/png", make_meta())
    file_id, body = drive.permissions_granted[0]
    assert file_id == uploaded.file_id
    assert body == {"type": "domain", "role": "reader", "domain": "example.com", "allowFileDiscovery": False}


@pytest.mark.parametrize("error", [
    make_http_error(400, "Permission already exists", reasons=["alreadyShared"]),
    make_http_error(403, "Cannot change inherited access", reasons=["cannotChangeInheritedAccess"]),
    make_http_error(400, "The new access is less than the inherited access"),
])
def test_benign_permission_errors_are_ignored(drive, error):
    assert is_benign_permission_error(error)
    drive.permission_error = error
    archiver = ReceiptArchiver(drive, FolderProvisioner(drive), "root-folder", sharing_domain="example.com")
    uploaded = archiver.upload(b"x", "image/png", make_meta())
    assert uploaded.file_id in drive.items


def test_other_permission_errors_propagate(drive):
    drive.permission_error = make_http_error(403, "Insufficient permissions", reasons=["insufficientFilePermissions"])
    archiver = ReceiptArchiver(drive, FolderProvisioner(drive), "root-folder", sharing_domain="example.com")
    with pytest.raises(HttpError):
        archiver.upload(b"x", "image/png", make_meta())
    assert not is_benign_permission_error(ValueError("nope"))
