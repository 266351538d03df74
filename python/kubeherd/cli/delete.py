#!/usr/bin/env python3
"""
kubeherd/cli/delete.py

Remove masters and/or nodes from an applied cluster. master-0 cannot be
removed; use `apply --delete --force` to tear the whole cluster down.
"""

from kubeherd.cli.scale import run


def main() -> None:
    run("delete")


if __name__ == "__main__":
    main()
