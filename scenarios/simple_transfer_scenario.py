# scenarios/simple_transfer_scenario.py
"""
Simple transfer load test: every VU repeatedly sends a fixed value from the
configured sender(s) to the target address. VUs that share a sender share its
nonce sequence.

    python -m scenarios.simple_transfer_scenario --vus 20 --iterations 50 --wait-for-receipt
"""
import argparse
import logging
import sys
from typing import Any, Dict, Optional

from eth_loadgen_core.config import LoadTestConfig
from eth_loadgen_core.driver import LoadTestRunner
from eth_loadgen_core.exceptions import AllocatorStateError, ConfigurationError, LoadGenError
from eth_loadgen_core.logging_config import setup_logging
from eth_loadgen_core.stats import format_summary, save_summary_json

logger = logging.getLogger("eth_loadgen_core.scenarios.simple_transfer")


def setup(runner: LoadTestRunner) -> Dict[str, int]:
    """Seeds every sender's nonce from the chain. Returns the starting nonce per sender."""
    return runner.setup()


def run_simple_transfer_scenario(config: LoadTestConfig,
                                 to_json: Optional[str] = None) -> Dict[str, Any]:
    """
    Runs the scenario to completion and returns the run summary.

    :param config: Validated before anything touches the network.
    :param to_json: Optional path to write the summary to.
    """
    logger.info("--- Starting Simple Transfer Scenario ---")
    logger.info("Config: %r", config)

    runner = LoadTestRunner(config)
    try:
        for address, start_nonce in setup(runner).items():
            logger.info("Starting nonce for %s: %d", address, start_nonce)
        runner.run()
        summary = runner.summary()
    finally:
        runner.close()

    logger.info("--- Simple Transfer Scenario Results ---")
    for line in format_summary(summary):
        logger.info(line)
    if to_json:
        save_summary_json(summary, to_json)
    return summary


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send simple value transfers from many concurrent VUs.")
    parser.add_argument("--env-file", default=None, help="Path to a .env file (default: ./.env)")
    parser.add_argument("--url", help="JSON-RPC endpoint (RPC_URL)")
    parser.add_argument("--vus", type=int, help="Number of virtual users (VUS)")
    parser.add_argument("--iterations", type=int, help="Iterations per VU (ITERATIONS)")
    parser.add_argument("--duration", type=float, help="Run each VU for this many seconds (DURATION)")
    parser.add_argument("--target", help="Recipient address (TARGET_ADDRESS)")
    parser.add_argument("--key-files", help="Comma-separated CSV key files adding senders (KEY_FILES)")
    parser.add_argument("--wait-for-receipt", action="store_true", default=None,
                        help="Poll for a receipt after every accepted transaction")
    parser.add_argument("--to-json", default=None, help="Write the run summary to this JSON file")
    parser.add_argument("--log-level", default=None, help="Log level (LOG_LEVEL)")
    return parser


def main(argv=None) -> int:
    args = _build_arg_parser().parse_args(argv)
    setup_logging(level=args.log_level)

    try:
        config = LoadTestConfig.from_env(args.env_file)
        if args.url:
            config.url = args.url
        if args.vus is not None:
            config.vus = args.vus
        if args.iterations is not None:
            config.iterations = args.iterations
        if args.duration is not None:
            config.duration = args.duration
            if args.iterations is None:
                config.iterations = None # duration alone bounds the run
        if args.target:
            config.target = args.target
        if args.key_files:
            config.key_files = [p.strip() for p in args.key_files.split(",") if p.strip()]
        if args.wait_for_receipt is not None:
            config.wait_for_receipt = args.wait_for_receipt
        config.validate()
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    try:
        run_simple_transfer_scenario(config, to_json=args.to_json)
    except AllocatorStateError as e:
        logger.critical("Run aborted, nonce bookkeeping is inconsistent: %s", e)
        return 1
    except LoadGenError as e:
        logger.error("Run failed during setup: %s", e)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
