"""Budget-bounded iteration loop around the Claude Code CLI."""
