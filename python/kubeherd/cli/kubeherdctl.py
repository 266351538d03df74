import sys
import subprocess

SUBCOMMANDS = ("apply", "join", "delete", "alpha")


def usage() -> str:
    return f"Usage: kubeherdctl <{'|'.join(SUBCOMMANDS)}> [args...]"


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(usage())
        sys.exit(0 if len(sys.argv) >= 2 else 1)

    subcommand = sys.argv[1]
    if subcommand not in SUBCOMMANDS:
        print(f"kubeherdctl: unknown subcommand {subcommand!r}", file=sys.stderr)
        print(usage(), file=sys.stderr)
        sys.exit(1)

    # each subcommand runs in its own interpreter, as `python -m`
    cmd = [sys.executable, "-m", f"kubeherd.cli.{subcommand}"] + sys.argv[2:]
    sys.exit(subprocess.call(cmd))


if __name__ == "__main__":
    main()
