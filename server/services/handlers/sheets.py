"""Google Sheets export node using Google API Python client.

API Reference: https://developers.google.com/workspace/sheets/api/reference/rest

The GOOGLE_SHEETS credential value is the JSON token bundle saved by the OAuth
flow: {access_token, refresh_token, expiry_date, client_id, client_secret}.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from constants import NodeType
from core.logging import get_logger
from services.credentials import CredentialStore
from services.execution.errors import NonRetriableError, UpstreamServiceError
from services.execution.models import ExecutionContext
from services.parameter_resolver import render_template, resolve_variable
from .common import load_credential, reporting_status, require

logger = get_logger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
SHEET_TITLE = "Sheet1"
SPREADSHEET_URL = "https://docs.google.com/spreadsheets/d/{id}"


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def objects_to_rows(objects: List[Dict[str, Any]]) -> List[List[Any]]:
    """Header row from the union of keys (first-seen order), then one row per object."""
    headers: List[str] = []
    for obj in objects:
        for key in obj:
            if key not in headers:
                headers.append(key)
    return [headers] + [[_cell(obj.get(h)) for h in headers] for obj in objects]


def to_sheet_rows(raw: Any) -> List[List[Any]]:
    """Normalize resolved node data into a 2-D array of cells.

    Lists of objects become header + rows, 2-D arrays pass through, flat lists
    give one value per row, a single object gives key/value rows and anything
    else is a single cell.
    """
    if isinstance(raw, list):
        if not raw:
            return []
        if isinstance(raw[0], dict):
            return objects_to_rows([item for item in raw if isinstance(item, dict)])
        if isinstance(raw[0], list):
            return [[_cell(v) for v in row] for row in raw]
        return [[str(item)] for item in raw]
    if isinstance(raw, dict):
        return [[key, _cell(value)] for key, value in raw.items()]
    return [[str(raw) if raw is not None else ""]]


def _header_requests(rows: List[List[Any]], sheet_id: int, start_row: int) -> List[Dict[str, Any]]:
    """Bold the column header rows."""
    if not rows:
        return []
    width = max(len(row) for row in rows)
    requests = []
    for i, row in enumerate(rows):
        is_header = (i == 0 or (len(rows[i - 1]) == 1 and rows[i - 1][0] != "")) and len(row) > 1
        if not is_header:
            continue
        requests.append({
            "repeatCell": {
                "range": {
                    "sheetId": sheet_id,
                    "startRowIndex": start_row + i,
                    "endRowIndex": start_row + i + 1,
                    "startColumnIndex": 0,
                    "endColumnIndex": width,
                },
                "cell": {"userEnteredFormat": {
                    "textFormat": {"bold": True},
                    "backgroundColor": {"red": 0.9, "green": 0.9, "blue": 0.9},
                }},
                "fields": "userEnteredFormat(textFormat,backgroundColor)",
            }
        })
    return requests


def _build_service(token: Dict[str, Any]):
    creds = Credentials(
        token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        token_uri=TOKEN_URI,
        client_id=token.get("client_id"),
        client_secret=token.get("client_secret"),
    )
    return build("sheets", "v4", credentials=creds, cache_discovery=False)


def _apply_formatting(service, spreadsheet_id: str, requests: List[Dict[str, Any]]) -> None:
    if not requests:
        return
    try:
        service.spreadsheets().batchUpdate(
            spreadsheetId=spreadsheet_id, body={"requests": requests}
        ).execute()
    except HttpError as e:
        logger.info("[Sheets] Formatting skipped", spreadsheet_id=spreadsheet_id, error=str(e))


def create_spreadsheet(service, title: str, rows: List[List[Any]]) -> Dict[str, Any]:
    spreadsheet = service.spreadsheets().create(body={
        "properties": {"title": title},
        "sheets": [{"properties": {"title": SHEET_TITLE}}],
    }).execute()
    spreadsheet_id = spreadsheet["spreadsheetId"]
    sheet_id = spreadsheet.get("sheets", [{}])[0].get("properties", {}).get("sheetId", 0)

    if rows:
        service.spreadsheets().values().update(
            spreadsheetId=spreadsheet_id,
            range=f"{SHEET_TITLE}!A1",
            valueInputOption="RAW",
            body={"values": rows},
        ).execute()
        width = max(len(row) for row in rows)
        _apply_formatting(service, spreadsheet_id, _header_requests(rows, sheet_id, 0) + [{
            "autoResizeDimensions": {"dimensions": {
                "sheetId": sheet_id, "dimension": "COLUMNS", "startIndex": 0, "endIndex": width,
            }}
        }])

    return {"spreadsheetId": spreadsheet_id, "spreadsheetUrl": SPREADSHEET_URL.format(id=spreadsheet_id)}


def append_to_spreadsheet(service, spreadsheet_id: str, rows: List[List[Any]]) -> Dict[str, Any]:
    """Write `rows` below the existing data, leaving one blank row."""
    current = service.spreadsheets().values().get(
        spreadsheetId=spreadsheet_id, range=SHEET_TITLE
    ).execute()
    next_row = len(current.get("values", [])) + 2

    meta = service.spreadsheets().get(spreadsheetId=spreadsheet_id, fields="sheets.properties").execute()
    sheet_id = meta.get("sheets", [{}])[0].get("properties", {}).get("sheetId", 0)

    response = service.spreadsheets().values().update(
        spreadsheetId=spreadsheet_id,
        range=f"{SHEET_TITLE}!A{next_row}",
        valueInputOption="RAW",
        body={"values": rows},
    ).execute()
    _apply_formatting(service, spreadsheet_id, _header_requests(rows, sheet_id, next_row - 1))

    return {
        "spreadsheetId": spreadsheet_id,
        "spreadsheetUrl": SPREADSHEET_URL.format(id=spreadsheet_id),
        "updatedRange": response.get("updatedRange"),
        "updatedRows": len(rows),
    }


async def handle_google_sheets(*, node_type: NodeType, data, node_id: str, user_id: str,
                               context: ExecutionContext, step, publish,
                               credentials: CredentialStore) -> ExecutionContext:
    """Export context data to a new spreadsheet (`create`) or an existing one (`append`)."""
    async with reporting_status(publish, node_type, node_id):
        credential_id = require(data, "credentialId", "Google Sheets Node: Credential is required", node_id)
        require(data, "dataVariable", "Google Sheets Node: Data variable is required", node_id)
        operation = data.get("operation") or "create"
        if operation == "append":
            require(data, "spreadsheetId", "Google Sheets Node: Spreadsheet ID is required for append", node_id)
        elif operation != "create":
            raise NonRetriableError(f"Google Sheets Node: Unknown operation: {operation}", node_id=node_id)

        record = await load_credential(step, credentials, f"get-google-sheets-credential-{node_id}",
                                       credential_id, user_id, "Google Sheets Node", node_id)
        rows = to_sheet_rows(resolve_variable(data["dataVariable"], context))

        async def export() -> Dict[str, Any]:
            token = credentials.reveal_json(record)
            try:
                service = await asyncio.to_thread(_build_service, token)
                if operation == "append":
                    spreadsheet_id = str(render_template(data["spreadsheetId"], context))
                    return await asyncio.to_thread(append_to_spreadsheet, service, spreadsheet_id, rows)
                title = data.get("spreadsheetTitle") or \
                    f"Workflow Data - {datetime.now(timezone.utc).isoformat()}"
                return await asyncio.to_thread(create_spreadsheet, service,
                                               str(render_template(title, context)), rows)
            except HttpError as e:
                status = getattr(e.resp, "status", 0)
                if status >= 500 or status == 429:
                    raise UpstreamServiceError(f"Google Sheets Node: {e}", node_id=node_id,
                                               status_code=status) from e
                raise NonRetriableError("Google Sheets Node: Operation failed", node_id=node_id) from e

        result = await step.run(f"google-sheets-{operation}-{node_id}", export)
        logger.info("[Sheets] Export complete", node_id=node_id, operation=operation,
                    spreadsheet_id=result.get("spreadsheetId"), rows=len(rows))

        return context.with_values(**{data.get("variableName") or "googleSheets": result})
