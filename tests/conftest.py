"""Shared fixtures: fake Dataverse records and pages."""

import pytest

from DESKTOPFLOW_REPORT import DataverseError, Page


def make_record(rid="flow-1", name="Flow", payload="x", owner="a@contoso.com",
                modified="2024-03-01T10:20:30Z", owner_key="owner.internalemailaddress"):
    record = {
        "@odata.etag": 'W/"1"',
        "workflowid": rid,
        "name": name,
        "clientdata": payload,
        owner_key: owner,
    }
    if modified is not None:
        record["modifiedon"] = modified
    return record


class FakeSource:
    """fetch_page stand-in serving canned pages and recording every call."""

    def __init__(self, pages, fail_on=None, on_fetch=None):
        self.pages = pages
        self.fail_on = fail_on
        self.on_fetch = on_fetch
        self.calls = []

    def __call__(self, page_number, paging_cookie):
        self.calls.append((page_number, paging_cookie))
        if self.on_fetch is not None:
            self.on_fetch(page_number)
        if self.fail_on == page_number:
            raise DataverseError(f"HTTPie error (exit 5) on page {page_number}")
        records = self.pages[page_number - 1]
        more = page_number < len(self.pages)
        return Page(
            number=page_number,
            records=records,
            more_records=more,
            paging_cookie=f"<cookie page=\"{page_number}\" />" if more else None,
        )


@pytest.fixture
def record():
    return make_record


@pytest.fixture
def source():
    return FakeSource
