"""Landing zone orchestration - command line entry point."""

import argparse
import json
import sys
from typing import List, Optional

from botocore.exceptions import NoCredentialsError, ProfileNotFound

from . import __version__
from .core.aws_client import AWSClientManager
from .core.config import Configuration, ConfigurationError
from .core.log import configure_logging
from .pipeline.planner import PlanningError
from .pipeline.runner import PipelineOrchestrator
from .pipeline.stages import parse_stages


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Landing zone accelerator orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Auto-detect config.yaml and run every stage
  %(prog)s accelerator.yaml --plan      # List the stacks a run would deploy
  %(prog)s --stages accounts logging    # Deploy only the named stages
        """,
    )

    parser.add_argument(
        "config_file",
        nargs="?",
        help="Path to configuration file (default: config.yaml or config/accelerator.yaml)",
    )
    parser.add_argument(
        "--stages", nargs="+", metavar="STAGE",
        help="Stages to deploy after prepare (default: all)",
    )
    parser.add_argument(
        "--plan", action="store_true",
        help="Print the deployment plan without changing anything",
    )
    parser.add_argument(
        "--max-polls", type=int, default=None,
        help="Stop waiting on account creation after this many polls",
    )
    parser.add_argument(
        "--publish-outputs", action="store_true",
        help="Write account, unit and policy ids to SSM Parameter Store",
    )
    parser.add_argument("--profile", help="AWS profile name to use for credentials")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--version", action="version", version=f"lza-orchestrator v{__version__}")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_arguments(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        try:
            config = Configuration(args.config_file)
        except ConfigurationError as e:
            print(f"❌ Configuration error: {e}")
            return 1

        try:
            stages = parse_stages(args.stages) if args.stages else None
        except ValueError as e:
            print(f"❌ {e}")
            return 2

        try:
            aws_client = AWSClientManager(profile_name=args.profile or config.get("aws.profile_name"))
        except (NoCredentialsError, ProfileNotFound) as e:
            print(f"❌ AWS client initialization failed: {e}")
            return 1

        orchestrator = PipelineOrchestrator(config, aws_client)

        if args.plan:
            try:
                stacks = orchestrator.plan_only(stages)
            except PlanningError as e:
                print(f"❌ {e}")
                return 1
            for stack_name in stacks:
                print(stack_name)
            return 0

        results = orchestrator.run(stages, args.max_polls, args.publish_outputs)
        print(json.dumps({k: results[k] for k in ('status', 'steps_completed', 'failures')}, indent=2))
        return 0 if results['status'] == 'SUCCESS' else 1

    except KeyboardInterrupt:
        print("\n\n👋 Operation cancelled by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
