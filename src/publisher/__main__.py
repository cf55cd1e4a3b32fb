#!/usr/bin/env python3
"""CLI entrypoint for the schedule dispatcher."""

from __future__ import annotations

from publisher.jobs.dispatcher import main

if __name__ == "__main__":
    raise SystemExit(main())
