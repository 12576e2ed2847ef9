#!/usr/bin/env python3
# DESKTOPFLOW_REPORT.py
# Production build:
# - FetchXML query over workflow (category 6 = desktop flows), inner join to the owning user
# - Paging-cookie pagination until the server reports no more records (optional --max-pages cap)
# - Payload size measured as Dataverse stores text (UTF-16), --min-size filter
# - Outputs: CSV (single file, streamed page by page); XLSX of the sorted report (--xlsx)
#   Skip CSV via --no-csv
# - Size-sorted console report (descending by default, --sort asc for the old ordering)

import argparse
import json
import os
import subprocess
import sys
import tempfile
import xml.etree.ElementTree as ET
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator
from urllib.parse import quote, unquote

# ----------------------------- Constants -----------------------------

API_PATH = "/api/data/v9.2"
WORKFLOWS_URL_T = "{uri}" + API_PATH + "/workflows?fetchXml={fetch}"
ORG_URL_T = "{uri}" + API_PATH + "/organizations?$select=friendlyname"

DESKTOP_FLOW_CATEGORY = 6
WORKFLOW_COLUMNS = ["workflowid", "name", "clientdata"]
MODIFIED_COLUMN = "modifiedon"
PAYLOAD_COLUMN = "clientdata"

OWNER_ALIAS = "owner"
OWNER_COLUMNS = {"email": "internalemailaddress", "name": "fullname"}

# Public Dataverse sample app registration; override with DATAVERSE_CLIENT_ID
DEFAULT_CLIENT_ID = "51f81489-12ee-4a9e-aaae-a2591f45987d"
REDIRECT_URI = "http://localhost"

ODATA_HEADERS = {
    "Accept": "application/json",
    "OData-MaxVersion": "4.0",
    "OData-Version": "4.0",
}
PREFER_ANNOTATIONS = 'odata.include-annotations="*"'
ANNOT_MORE = "@Microsoft.Dynamics.CRM.morerecords"
ANNOT_COOKIE = "@Microsoft.Dynamics.CRM.fetchxmlpagingcookie"
ANNOT_TOTAL = "@Microsoft.Dynamics.CRM.totalrecordcount"

MAX_PAGE_SIZE = 5000
DEFAULT_PAGE_SIZE = 10
DEFAULT_CSV_PATH = "desktopflow.csv"
CSV_HEADER = "Name,Size,Owner,ModifiedOn"
SIZE_UNITS = ["B", "KB", "MB", "GB", "TB", "PB", "EB"]

XLSX_SHEET = "desktopflows"
XLSX_COLUMNS = ["Name", "Id", "Size", "Size (bytes)", "Owner", "ModifiedOn"]

ICONS = {
    "org": "🏢",
    "page": "📦",
    "arrow": "➡️",
    "done": "📊",
    "warn": "⚠️",
}


class DataverseError(RuntimeError):
    """Transport, authentication or HTTP failure talking to Dataverse."""


class DataIntegrityError(RuntimeError):
    """A returned record lacks a value the inner join guarantees."""


# ----------------------------- Utilities -----------------------------

def die(msg: str, code: int = 2) -> None:
    print(f"ERROR: {msg}", file=sys.stderr)
    sys.exit(code)


def icon(name: str, enabled: bool) -> str:
    return ICONS[name] if enabled else ""


def check_env() -> str | None:
    """Return a pre-acquired bearer token from the environment, if any."""
    token = os.getenv("DATAVERSE_ACCESS_TOKEN")
    if os.getenv("DATAVERSE_TOKEN") and not token:
        print("WARN: DATAVERSE_TOKEN is ignored; export the bearer token as DATAVERSE_ACCESS_TOKEN.",
              file=sys.stderr)
    return token or None


def acquire_token(service_uri: str) -> str:
    """
    Bearer token for {service_uri}/.default.
    DATAVERSE_ACCESS_TOKEN wins; otherwise sign in through the browser.
    """
    token = check_env()
    if token:
        return token

    try:
        from azure.core.exceptions import ClientAuthenticationError
        from azure.identity import InteractiveBrowserCredential
    except ImportError as e:
        die(f"Interactive sign-in needs azure-identity: {e}. Install it or set DATAVERSE_ACCESS_TOKEN.")

    kwargs: dict[str, Any] = {
        "client_id": os.getenv("DATAVERSE_CLIENT_ID") or DEFAULT_CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
    }
    if os.getenv("AZURE_TENANT_ID"):
        kwargs["tenant_id"] = os.environ["AZURE_TENANT_ID"]
    credential = InteractiveBrowserCredential(**kwargs)
    try:
        return credential.get_token(f"{service_uri}/.default").token
    except ClientAuthenticationError as e:
        raise DataverseError(f"sign-in to {service_uri} failed: {e}") from e


@contextmanager
def bearer_session(token: str) -> Iterator[str]:
    """
    Read-only HTTPie session file carrying the bearer token, so the token never
    shows up in the process arguments. mkstemp creates it owner-only (0600).
    """
    fd, path = tempfile.mkstemp(prefix="desktopflow-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"headers": [], "cookies": [], "auth": {"type": "bearer", "raw_auth": token}}, fh)
        yield path
    finally:
        os.unlink(path)


def call_httpie(method: str, url: str, token: str, headers: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Run one HTTPie request with bearer auth and return the JSON body.
    No retries: a non-zero HTTPie exit (network, 4xx, 5xx) raises DataverseError.
    """
    with bearer_session(token) as session_path:
        cmd = ["http", "--body", "--check-status", "--ignore-stdin",
               f"--session-read-only={session_path}", method, url]
        for name, value in (headers or {}).items():
            cmd.append(f"{name}:{value}")
        try:
            proc = subprocess.run(cmd, text=True, capture_output=True, check=False)
        except FileNotFoundError as e:
            raise DataverseError("http(ie) is not installed. Install with `pip install httpie`.") from e

    if proc.returncode != 0:
        stderr = proc.stderr or ""
        if " 401 " in stderr or " 403 " in stderr or "Unauthorized" in stderr:
            raise DataverseError(
                f"HTTPie 401/403 from {method} {url}. Verify the token and your access to the environment.\n"
                + stderr)
        raise DataverseError(f"HTTPie error (exit {proc.returncode}) from {method} {url}:\n{stderr}")

    out = proc.stdout.strip()
    if not out:
        return {}
    try:
        return json.loads(out)
    except json.JSONDecodeError as e:
        raise DataverseError(f"JSON parse error from {method} {url}: {e}\nRaw (first 4KB):\n{out[:4096]}") from e


def fetch_org_name(service_uri: str, token: str) -> str:
    payload = call_httpie("GET", ORG_URL_T.format(uri=service_uri), token, ODATA_HEADERS)
    orgs = payload.get("value")
    if isinstance(orgs, list) and orgs and isinstance(orgs[0], dict):
        return str(orgs[0].get("friendlyname") or "")
    return ""


# ----------------------------- Query / pagination -----------------------------

@dataclass
class Page:
    number: int
    records: list[dict[str, Any]]
    more_records: bool
    paging_cookie: str | None
    total_count: int | None = None


FetchPage = Callable[[int, str | None], Page]


def build_fetch_xml(
    page_size: int,
    page_number: int = 1,
    paging_cookie: str | None = None,
    owner_field: str = "email",
    include_modified: bool = True,
    category: int = DESKTOP_FLOW_CATEGORY,
) -> str:
    """FetchXML for one page of workflows in `category`, inner-joined to the owning user."""
    fetch = ET.Element("fetch", {
        "count": str(page_size),
        "page": str(page_number),
        "returntotalrecordcount": "true",
    })
    if paging_cookie is not None:
        fetch.set("paging-cookie", paging_cookie)

    entity = ET.SubElement(fetch, "entity", {"name": "workflow"})
    columns = WORKFLOW_COLUMNS + ([MODIFIED_COLUMN] if include_modified else [])
    for column in columns:
        ET.SubElement(entity, "attribute", {"name": column})

    flt = ET.SubElement(entity, "filter", {"type": "and"})
    ET.SubElement(flt, "condition", {"attribute": "category", "operator": "eq", "value": str(category)})

    link = ET.SubElement(entity, "link-entity", {
        "name": "systemuser",
        "from": "systemuserid",
        "to": "owninguser",
        "link-type": "inner",
        "alias": OWNER_ALIAS,
    })
    ET.SubElement(link, "attribute", {"name": OWNER_COLUMNS[owner_field]})
    return ET.tostring(fetch, encoding="unicode")


def paging_cookie_from_annotation(annotation: str | None) -> str | None:
    """
    The fetchxmlpagingcookie annotation wraps the cookie to send back:
      <cookie pagenumber="2" pagingcookie="%253ccookie%2520page..." istracking="False" />
    The pagingcookie attribute is URL-encoded twice.
    """
    if not annotation:
        return None
    try:
        root = ET.fromstring(annotation)
    except ET.ParseError as e:
        raise DataverseError(f"unreadable paging cookie annotation: {annotation[:200]}") from e
    raw = root.get("pagingcookie")
    if not raw:
        return None
    return unquote(unquote(raw))


def parse_page(payload: dict[str, Any], number: int) -> Page:
    records = payload.get("value")
    if not isinstance(records, list):
        raise DataverseError(f"page {number}: response has no 'value' array")
    total = payload.get(ANNOT_TOTAL)
    return Page(
        number=number,
        records=records,
        more_records=bool(payload.get(ANNOT_MORE, False)),
        paging_cookie=paging_cookie_from_annotation(payload.get(ANNOT_COOKIE)),
        # -1 means the server did not count
        total_count=total if isinstance(total, int) and total >= 0 else None,
    )


def make_page_fetcher(
    service_uri: str,
    token: str,
    page_size: int,
    owner_field: str = "email",
    include_modified: bool = True,
) -> FetchPage:
    headers = dict(ODATA_HEADERS, Prefer=PREFER_ANNOTATIONS)

    def fetch_page(page_number: int, paging_cookie: str | None) -> Page:
        fetch_xml = build_fetch_xml(page_size, page_number, paging_cookie, owner_field, include_modified)
        url = WORKFLOWS_URL_T.format(uri=service_uri, fetch=quote(fetch_xml, safe=""))
        return parse_page(call_httpie("GET", url, token, headers), page_number)

    return fetch_page


def stream_pages(fetch_page: FetchPage, max_pages: int | None = None) -> Iterator[Page]:
    """
    Exhaustive pagination:
      1) page 1 with no cookie
      2) every following request carries the previous page's cookie and page + 1
      3) stop when morerecords is false (or after max_pages, when set)
    The next page is only requested once the caller is done with the current one.
    """
    page_number = 1
    cookie: str | None = None
    while True:
        page = fetch_page(page_number, cookie)
        yield page
        if not page.more_records:
            return
        if max_pages is not None and page_number >= max_pages:
            print(f"WARN: stopped after --max-pages={max_pages}; the server reports more records.",
                  file=sys.stderr)
            return
        cookie = page.paging_cookie
        page_number += 1


# ----------------------------- Records -----------------------------

@dataclass(frozen=True)
class ReportRow:
    id: str
    name: str
    size_bytes: int
    owner_label: str
    modified_on: datetime | None = None


def utf16_size(text: str | None) -> int:
    """Bytes the text occupies in Dataverse: two per UTF-16 code unit."""
    if text is None:
        return 0
    return len(text.encode("utf-16-le", "surrogatepass"))


def parse_modified_on(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def transform_record(record: dict[str, Any], min_size: int = 0, owner_field: str = "email") -> ReportRow | None:
    """
    Measure, filter and project one workflow record.
    The payload is popped off the record so the large string is not kept around.
    """
    size = utf16_size(record.pop(PAYLOAD_COLUMN, None))
    if size < min_size:
        return None

    rid = record.get("workflowid")
    if not rid:
        raise DataIntegrityError(f"record without workflowid: {sorted(record)}")
    owner_key = f"{OWNER_ALIAS}.{OWNER_COLUMNS[owner_field]}"
    owner = record.get(owner_key)
    if owner is None:
        raise DataIntegrityError(f"workflow {rid} has no {owner_key} despite the inner join on its owner")

    return ReportRow(
        id=str(rid),
        name=str(record.get("name") or ""),
        size_bytes=size,
        owner_label=str(owner),
        modified_on=parse_modified_on(record.get(MODIFIED_COLUMN)),
    )


def sort_rows(rows: list[ReportRow], descending: bool = True) -> list[ReportRow]:
    return sorted(rows, key=lambda r: r.size_bytes, reverse=descending)


# ----------------------------- Formatting -----------------------------

def human_size(byte_count: int) -> str:
    if byte_count == 0:
        return "0" + SIZE_UNITS[0]
    magnitude = abs(byte_count)
    # floor(log1024) from the bit length; float log() lands one unit low on some powers of 1024
    place = min((magnitude.bit_length() - 1) // 10, len(SIZE_UNITS) - 1)
    num = round(magnitude / 1024 ** place, 1)
    sign = -1 if byte_count < 0 else 1
    return f"{sign * num:g}{SIZE_UNITS[place]}"


def csv_line(row: ReportRow) -> str:
    # No quoting: commas inside names shift columns, same as every earlier release.
    modified = row.modified_on.isoformat() if row.modified_on else ""
    return f"{row.name},{row.size_bytes},{row.owner_label},{modified}\n"


def console_line(row: ReportRow) -> str:
    line = (f"DesktopFlow: {row.name} with id: {row.id}, Size: {human_size(row.size_bytes)}, "
            f"Owner: {row.owner_label}")
    if row.modified_on is not None:
        line += f", Last Modified date: {row.modified_on:%Y-%m-%d %H:%M:%S}"
    return line


# ----------------------------- Report -----------------------------

@dataclass
class ReportOptions:
    min_size: int = 0
    csv_path: Path | None = Path(DEFAULT_CSV_PATH)
    sort_descending: bool = True
    owner_field: str = "email"
    max_pages: int | None = None
    icons: bool = False


def run_report(fetch_page: FetchPage, options: ReportOptions) -> list[ReportRow]:
    """
    Drive the pages through the transformer and the CSV sink; return the sorted rows.
    The CSV gets the header up front and each page's accepted rows right after that page,
    flushed, so a failure on page k leaves pages 1..k-1 on disk.
    """
    rows: list[ReportRow] = []

    if options.csv_path is not None:
        options.csv_path.parent.mkdir(parents=True, exist_ok=True)
        sink = options.csv_path.open("w", encoding="utf-8", newline="")
    else:
        sink = nullcontext()

    with sink as csv_file:
        if csv_file is not None:
            csv_file.write(CSV_HEADER + "\n")
            csv_file.flush()

        for page in stream_pages(fetch_page, options.max_pages):
            if page.number == 1 and page.total_count is not None:
                print(f"  server reports {page.total_count} desktop flows")

            accepted: list[ReportRow] = []
            for record in page.records:
                row = transform_record(record, options.min_size, options.owner_field)
                if row is not None:
                    accepted.append(row)
            page.records.clear()

            if csv_file is not None:
                csv_file.writelines(csv_line(r) for r in accepted)
                csv_file.flush()

            rows.extend(accepted)
            print(
                f"    {icon('page', options.icons)} "
                f"page {page.number}: {len(accepted)} desktop flows"
                f"  {icon('arrow', options.icons)}  total={len(rows)}"
            )

    return sort_rows(rows, options.sort_descending)


def print_report(rows: list[ReportRow], org_name: str, icons: bool = False) -> None:
    for row in rows:
        print(console_line(row))
    total = sum(r.size_bytes for r in rows)
    print(f"{icon('done', icons)} {len(rows)} desktop flows in {org_name}, {human_size(total)} total".strip())


def write_xlsx(rows: list[ReportRow], xlsx_path: Path) -> Path:
    """
    Sorted report -> one XLSX sheet. Requires pandas + XlsxWriter.
    Excel has no time zones, so modified dates are written as naive UTC.
    """
    try:
        import pandas as pd
    except ImportError as e:
        die(f"XLSX requested but pandas is not available: {e}. Install pandas/xlsxwriter or drop --xlsx.")

    records = [
        {
            "Name": r.name,
            "Id": r.id,
            "Size": human_size(r.size_bytes),
            "Size (bytes)": r.size_bytes,
            "Owner": r.owner_label,
            "ModifiedOn": r.modified_on.replace(tzinfo=None) if r.modified_on else None,
        }
        for r in rows
    ]
    df = pd.DataFrame(records, columns=XLSX_COLUMNS)

    xlsx_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(str(xlsx_path), engine="xlsxwriter", datetime_format="yyyy-mm-dd hh:mm:ss") as writer:
        df.to_excel(writer, index=False, sheet_name=XLSX_SHEET)
        ws = writer.sheets[XLSX_SHEET]
        for i, col in enumerate(df.columns):
            widest = int(df[col].astype(str).map(len).max()) if len(df) else 0
            max_len = min(80, max(len(str(col)), widest))
            ws.set_column(i, i, max(10, max_len + 2))
    return xlsx_path


# ----------------------------- CLI / Main -----------------------------

def positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0: {value}")
    return n


def page_size_int(value: str) -> int:
    n = positive_int(value)
    if n > MAX_PAGE_SIZE:
        raise argparse.ArgumentTypeError(f"must be <= {MAX_PAGE_SIZE}: {value}")
    return n


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="desktopflow-report",
        description="Power Automate desktop flows in a Dataverse environment, sorted by payload size."
    )
    sub = ap.add_subparsers(dest="command", required=True)

    lst = sub.add_parser("list", help="List desktop flows with their size, owner and last modified date")
    lst.add_argument("--service-uri", required=True, help="Environment URL, e.g. https://org.crm.dynamics.com")
    lst.add_argument("--min-size", type=int, default=0,
                     help="Drop desktop flows smaller than this many bytes")
    lst.add_argument("--path", default=DEFAULT_CSV_PATH, help="CSV output path")
    lst.add_argument("--no-csv", action="store_true", help="Skip writing the CSV file")
    lst.add_argument("--page-size", type=page_size_int, default=DEFAULT_PAGE_SIZE,
                     help=f"Rows requested per page (1-{MAX_PAGE_SIZE})")
    lst.add_argument("--sort", choices=["asc", "desc"], default="desc", help="Console order by size")
    lst.add_argument("--owner-field", choices=sorted(OWNER_COLUMNS), default="email",
                     help="Owner column shown in the report")
    lst.add_argument("--no-modified", action="store_true", help="Do not fetch the last modified date")
    lst.add_argument("--max-pages", type=positive_int, default=None,
                     help="Stop after this many pages even if the server reports more")
    lst.add_argument("--xlsx", default=None, help="Also write the sorted report to this .xlsx file")
    lst.add_argument("--icons", action="store_true", help="Add visual icons to logs")
    return ap


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    service_uri = args.service_uri.rstrip("/")
    csv_path = None if args.no_csv else Path(args.path)
    options = ReportOptions(
        min_size=args.min_size,
        csv_path=csv_path,
        sort_descending=(args.sort == "desc"),
        owner_field=args.owner_field,
        max_pages=args.max_pages,
        icons=args.icons,
    )

    try:
        token = acquire_token(service_uri)
        org_name = fetch_org_name(service_uri, token) or service_uri
        print(f"{icon('org', args.icons)} Connected to {org_name}".strip())
        fetch_page = make_page_fetcher(
            service_uri, token, args.page_size,
            owner_field=args.owner_field, include_modified=not args.no_modified,
        )
        rows = run_report(fetch_page, options)
    except DataverseError as e:
        die(str(e), code=1)
    except DataIntegrityError as e:
        die(f"data integrity: {e}", code=1)

    print_report(rows, org_name, args.icons)

    xlsx_path: Path | None = None
    if args.xlsx:
        xlsx_path = write_xlsx(rows, Path(args.xlsx))

    print("Outputs:")
    print(f"  CSV   : {csv_path if csv_path else '(skipped)'}")
    print(f"  XLSX  : {xlsx_path if xlsx_path else '(skipped)'}")


if __name__ == "__main__":
    main()
