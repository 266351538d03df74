#!/usr/bin/env python3
"""
kubeherd/cli/join.py

Add masters and/or nodes to an applied cluster.
"""

from kubeherd.cli.scale import run


def main() -> None:
    run("join")


if __name__ == "__main__":
    main()
