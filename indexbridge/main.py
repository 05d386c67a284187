"""CLI entrypoint for browsing document indexes and asking questions over them."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

from indexbridge.errors import IndexBridgeError

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Query LlamaCloud or Bedrock document indexes through one interface."
    )
    parser.add_argument(
        "--user-email",
        default=None,
        help="Caller email; internal-domain users may get the internal LlamaCloud key.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check-config", help="Validate provider selection and credentials.")
    sub.add_parser("projects", help="Verify credentials and list accessible projects.")

    pipelines = sub.add_parser("pipelines", help="List the pipelines of a project.")
    pipelines.add_argument("--project", required=True, help="Project id.")

    documents = sub.add_parser("documents", help="List a project's pipelines and documents.")
    documents.add_argument("--project", required=True, help="Project id.")

    ask = sub.add_parser("ask", help="Answer a question with the multi-step pipeline.")
    ask.add_argument("--project", required=True, help="Project id.")
    ask.add_argument(
        "--pipeline",
        dest="pipelines",
        action="append",
        required=True,
        help="Pipeline id to search; repeat for several.",
    )
    ask.add_argument("--question", required=True, help="Question to answer.")
    ask.add_argument("--context", default=None, help="Optional caller-supplied context.")
    ask.add_argument(
        "--detail",
        choices=["brief", "standard", "comprehensive"],
        default="standard",
        help="Answer detail level.",
    )
    ask.add_argument(
        "--show-reasoning",
        action="store_true",
        help="Ask for the reasoning behind the answer.",
    )
    ask.add_argument(
        "--offline",
        action="store_true",
        help="Use the deterministic offline completion client (no LLM API calls).",
    )
    return parser


def configure_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _dump(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


async def _run(args: argparse.Namespace) -> int:
    from indexbridge.catalog import collect_project_catalog
    from indexbridge.credentials import (
        assert_valid_provider_configuration,
        resolve_credentials,
        validate_provider_configuration,
    )
    from indexbridge.providers.factory import ProviderFactory

    if args.command == "check-config":
        report = validate_provider_configuration()
        _dump({"valid": report.valid, "errors": report.errors, "warnings": report.warnings})
        return 0 if report.valid else 1

    assert_valid_provider_configuration()
    factory = ProviderFactory()
    provider = factory.get_provider()
    credentials = resolve_credentials(provider.provider_type, args.user_email)

    if args.command == "projects":
        projects = await provider.verify_credentials_and_fetch_projects(credentials)
        _dump([project.model_dump() for project in projects])
    elif args.command == "pipelines":
        await provider.verify_project_access(credentials, args.project)
        pipelines = await provider.fetch_pipelines_for_project(credentials, args.project)
        _dump([pipeline.model_dump() for pipeline in pipelines])
    elif args.command == "documents":
        catalog = await collect_project_catalog(provider, credentials, args.project)
        _dump(catalog.model_dump())
    elif args.command == "ask":
        from indexbridge.llm_client import get_llm_client
        from indexbridge.models import MultiStepRequest, UserPreferences
        from indexbridge.orchestrator import MultiStepResponseService

        service = MultiStepResponseService(factory, get_llm_client())
        request = MultiStepRequest(
            question=args.question,
            question_id=f"q-{uuid.uuid4().hex[:12]}",
            project_id=args.project,
            pipeline_ids=args.pipelines,
            context=args.context,
            preferences=UserPreferences(
                detail_level=args.detail, show_reasoning=args.show_reasoning
            ),
        )
        response = await service.generate(request, user_email=args.user_email)
        _dump(response.model_dump(mode="json"))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if getattr(args, "offline", False):
        os.environ["OFFLINE_MODE"] = "1"
        os.environ["LLM_PROVIDER"] = "mock"
    configure_logging()

    try:
        return asyncio.run(_run(args))
    except IndexBridgeError as exc:
        log.error("%s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
