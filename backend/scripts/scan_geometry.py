"""Report registered fields whose data type looks like an unrecognised geometry."""
from __future__ import annotations

import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app import create_app
from backend.app.services import get_table_registry


def main() -> int:
    app = create_app()
    with app.app_context():
        findings = get_table_registry().suspicious_types()

    if not findings:
        print("No suspicious geometry types found")
        return 0

    for finding in findings:
        print(f"{finding.table}.{finding.field}: {finding.data_type}")
    print(f"{len(findings)} suspicious field type(s) found")
    return 1


if __name__ == "__main__":
    sys.exit(main())
