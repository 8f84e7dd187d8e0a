"""
Command-line interface.

    browsepilot run "Open example.com and read the headline"
    browsepilot workflow jobs/survey.yaml
    browsepilot supervise --instances 2 --stagger 10 -- browsepilot workflow jobs/survey.yaml

Configuration comes from the environment (and a local .env file); see
browsepilot.config for the variables.
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from browsepilot.agent_loop import DEFAULT_SYSTEM_INSTRUCTIONS, AgentLoop
from browsepilot.config import AgentConfig
from browsepilot.gateway import McpToolGateway
from browsepilot.governor import SessionGovernor
from browsepilot.llm import LLMClient
from browsepilot.supervisor import AppSpec, Supervisor
from browsepilot.workflow import Deadline, WorkflowRunner, WorkflowSpec

logger = logging.getLogger(__name__)


def build_agent(config: AgentConfig) -> AgentLoop:
    """Wire gateway, governor, chat client and loop from one config."""
    gateway = McpToolGateway(config.gateway)
    governor = SessionGovernor(gateway, config.governor)
    llm_client = LLMClient(config.llm)
    return AgentLoop(governor, llm_client, config.loop)


async def run_single_task(config: AgentConfig, task: str, system: str, max_turns: int | None) -> int:
    agent = build_agent(config)
    try:
        await agent.governor.connect()
        result = await agent.run_task(task, system, max_turns=max_turns)
        print(result)
        return 0
    except Exception as e:
        logger.error(f"Task failed: {e}")
        return 1
    finally:
        usage = agent.token_usage
        logger.info(f"Token usage: {usage.to_dict()}")
        await agent.governor.close()
        await agent.llm_client.close()


async def run_workflow(config: AgentConfig, path: str) -> int:
    spec = WorkflowSpec.from_yaml(path)
    agent = build_agent(config)
    runner = WorkflowRunner(agent, spec, Deadline(config.deadline_seconds))
    try:
        await agent.governor.connect()
        result = await runner.run()
        logger.info(f"Workflow finished: {result.status.value} after {result.chunks_run} chunks")
        return result.status.exit_code
    except Exception as e:
        logger.error(f"Workflow failed: {e}")
        return 1
    finally:
        await agent.governor.close()
        await agent.llm_client.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LLM-driven browser agent")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"),
                        help="Logging level (default: INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Run a single task")
    run_parser.add_argument("task", help="Natural-language task")
    run_parser.add_argument("--system", default=DEFAULT_SYSTEM_INSTRUCTIONS,
                            help="System instructions")
    run_parser.add_argument("--max-turns", type=int, help="Override the turn limit")

    workflow_parser = subparsers.add_parser("workflow", help="Run a YAML workflow")
    workflow_parser.add_argument("file", help="Workflow definition")

    supervise_parser = subparsers.add_parser("supervise", help="Run several instances of a command")
    supervise_parser.add_argument("--name", default="agent", help="Instance name prefix")
    supervise_parser.add_argument("--instances", type=int, default=1, help="Number of instances")
    supervise_parser.add_argument("--stagger", type=float, default=10.0,
                                  help="Seconds between instance launches")
    supervise_parser.add_argument("--restart-delay", type=float, default=5.0,
                                  help="Seconds to wait before restarting an exited instance")
    supervise_parser.add_argument("--no-restart", action="store_true",
                                  help="Do not restart exited instances")
    supervise_parser.add_argument("--env-file", help="Extra environment for every instance")
    supervise_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to supervise")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "supervise":
        command = [c for c in args.cmd if c != "--"] if args.cmd else []
        if not command:
            parser.error("supervise needs a command after --")
        app = AppSpec(
            name=args.name,
            command=command,
            instances=args.instances,
            stagger_delay=args.stagger,
            autorestart=not args.no_restart,
            restart_delay=args.restart_delay,
            env_file=args.env_file,
        )
        Supervisor([app]).run()
        return 0

    if args.command not in ("run", "workflow"):
        parser.print_help()
        return 2

    try:
        config = AgentConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.command == "run":
        return asyncio.run(run_single_task(config, args.task, args.system, args.max_turns))
    return asyncio.run(run_workflow(config, args.file))


if __name__ == "__main__":
    sys.exit(main())
