#!/usr/bin/env python3
"""
Probe every configured formation agent and report its health.
"""

import argparse
import json
import sys
from pathlib import Path

# Add the parent directory to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from formation.agents.registry import AGENT_NAMES, AgentRegistry
from formation.core.config import get_agent_urls, validate_config


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Check health of the formation agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                       # Check every agent
  %(prog)s --agent certificate   # Check one agent
  %(prog)s --json                # Machine-readable output

Agent URLs come from API_BASE_URL or the per-agent *_API_URL variables.
Exit status is non-zero when any checked agent is offline.
        """
    )
    parser.add_argument("--agent", action="append", choices=AGENT_NAMES, help="Agent to check (repeatable)")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    args = parser.parse_args(argv)

    for issue in validate_config():
        print(f"WARNING: {issue}", file=sys.stderr)

    with AgentRegistry() as registry:
        results = registry.check_all_agents(args.agent)

    if args.json:
        print(json.dumps({name: health.to_dict() for name, health in results.items()}, indent=2))
    else:
        urls = get_agent_urls()
        for name, health in results.items():
            latency = f"{health.latency_ms:.0f}ms" if health.latency_ms is not None else "-"
            line = f"  {name:<16} {health.status.value:<9} {latency:>8}  {urls.get(name, '')}"
            if health.error_message:
                line += f"  ({health.error_message})"
            print(line)

    offline = [name for name, health in results.items() if health.status.value == "offline"]
    return 1 if offline else 0


if __name__ == "__main__":
    sys.exit(main())
