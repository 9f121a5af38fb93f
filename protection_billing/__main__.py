from __future__ import annotations

from protection_billing.cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
