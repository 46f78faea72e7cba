"""Stream a pipeline run from a running API and print events as they arrive.

Usage:
  python -m scripts.run_pipeline_stream resume.pdf --role "ML Engineer" --location "Austin, TX"
  python -m scripts.run_pipeline_stream resume.md --role "Data Engineer" --remote --json

The API base URL comes from `API_BASE_URL` (env or .env), default
http://localhost:8000. Ctrl+C cancels the run on the server.
"""

from __future__ import annotations

from argparse import ArgumentParser
import json
import logging
from pathlib import Path
import sys

from core.config import get_config_value
from ui.api_client import ApiError, PipelineApiClient, build_pipeline_config
from ui.session import SearchSession

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _print_message(session: SearchSession, event: str) -> None:
    if event == "phase":
        print(f"[{session.progress:3d}%] {session.status}: {session.message or ''}")
    elif event == "profile" and session.profile is not None:
        p = session.profile
        print(f"profile: {p.seniority_level}, {p.experience_years:g} yrs, {len(p.skills)} skills")
    elif event == "job":
        job = session.jobs[-1]
        print(f"job: {job.title} @ {job.company} ({job.source})")
    elif event == "analysis":
        analysis = list(session.analyses.values())[-1]
        print(f"analysis: {analysis.job_id} score={analysis.overall_score}")
    elif event == "coverLetter":
        letter = list(session.cover_letters.values())[-1]
        print(f"cover letter: {letter.job_id} ({len(letter.content)} chars)")


def main() -> int:
    parser = ArgumentParser(description="Run the job search pipeline and stream its events.")
    parser.add_argument("resume", type=Path, help="Path to a PDF, markdown or text resume.")
    parser.add_argument("--role", action="append", required=True, help="Target role (repeatable).")
    parser.add_argument("--location", action="append", default=[], help="Location (repeatable).")
    parser.add_argument("--remote", action="store_true", help="Only remote roles.")
    parser.add_argument("--radius", type=int, default=None, help="Search radius for onsite roles.")
    parser.add_argument("--exclude", action="append", default=[], help="Company to exclude.")
    parser.add_argument("--min-fit", type=int, default=None, help="Minimum fit score for letters.")
    parser.add_argument("--template", type=Path, default=None, help="Cover letter template file.")
    parser.add_argument("--no-letters", action="store_true", help="Skip cover letter generation.")
    parser.add_argument("--json", action="store_true", help="Print raw events as JSON lines.")
    parser.add_argument("--base-url", default=None, help="API base URL.")
    args = parser.parse_args()

    base_url = args.base_url or get_config_value("API_BASE_URL", "http://localhost:8000")
    client = PipelineApiClient(base_url)

    search_config: dict = {"targetRoles": args.role, "locations": args.location}
    if args.remote:
        search_config["workPreferences"] = ["remote"]
    if args.radius is not None:
        search_config["radius"] = args.radius
    if args.exclude:
        search_config["excludeCompanies"] = args.exclude
    config = build_pipeline_config(
        search_config,
        template=args.template.read_text(encoding="utf-8") if args.template else None,
        min_fit_score=args.min_fit,
        generate_cover_letters=not args.no_letters,
    )

    session = SearchSession()

    def _remember(run_id: str) -> None:
        session.run_id = run_id
        logger.info("pipeline_stream.started run_id=%s", run_id)

    try:
        for message in client.stream_pipeline(args.resume, config, on_run_id=_remember):
            session.apply(message)
            if args.json:
                print(json.dumps({"event": message.event, "data": message.data}))
            else:
                _print_message(session, message.event)
    except KeyboardInterrupt:
        if session.run_id:
            try:
                client.cancel(session.run_id)
            except ApiError as exc:
                logger.warning("pipeline_stream.cancel_failed error=%s", exc)
        session.mark_cancelled()
        print("cancelled")
        return 130
    except ApiError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if session.error is not None:
        print(f"pipeline error [{session.error.code}] in {session.error.phase}: {session.error.message}")
        return 2
    if session.summary is not None and not args.json:
        print(json.dumps(session.summary.to_wire(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
