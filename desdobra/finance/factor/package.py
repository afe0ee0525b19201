from __future__ import annotations

import csv
import io
import json
import re
import zipfile
from typing import Any, Dict, List


ITEM_CSV_COLUMNS: List[str] = [
    "line_no",
    "action_type",
    "ar_installment_id",
    "ar_title_id",
    "installment_number_snapshot",
    "due_date_snapshot",
    "amount_snapshot",
    "proposed_due_date",
    "status",
    "final_amount",
    "final_due_date",
]

README_TEXT = (
    "Pacote da operacao de desconto.\n"
    "Contem o snapshot da operacao e a planilha de itens.\n"
    "XML de NF-e e DANFE nao sao incluidos neste pacote.\n"
)


def _sanitize_name_part(value: Any) -> str:
    return re.sub(r"[^\w\-]+", "_", str(value).strip())


def package_filename(operation_number: Any) -> str:
    return f"factor_operacao_{_sanitize_name_part(operation_number)}.zip"


def _items_csv(items: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=ITEM_CSV_COLUMNS, extrasaction="ignore", delimiter=";")
    writer.writeheader()
    for item in items:
        writer.writerow({column: item.get(column) for column in ITEM_CSV_COLUMNS})
    return buffer.getvalue()


def build_operation_package(detail: Dict[str, Any]) -> bytes:
    operation = detail.get("operation") or {}
    number = _sanitize_name_part(operation.get("operation_number", "0"))

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(
            f"operacao_{number}_snapshot.json",
            json.dumps(detail, ensure_ascii=False, indent=2, default=str),
        )
        archive.writestr(f"operacao_{number}_itens.csv", _items_csv(list(detail.get("items") or [])))
        archive.writestr("README.txt", README_TEXT)
    return buffer.getvalue()
