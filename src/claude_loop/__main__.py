from __future__ import annotations

from claude_loop.commands import main


if __name__ == "__main__":
    raise SystemExit(main())
