from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import create_app  # noqa: E402
from app.booking.query import audit_claims  # noqa: E402


def main() -> int:
    app = create_app()
    with app.app_context():
        issues = audit_claims()
    if not issues:
        print("Claims audit passed: catalog and ledger agree.")
        return 0

    print("Claims audit found issues:")
    for item in issues:
        print(f"- {item.code} {item.ref} {item.message}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
