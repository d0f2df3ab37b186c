#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

from homework_grader import (
    AnswerExtractor,
    AnswerKeyExtractor,
    DomainHints,
    GradeOptions,
    Grader,
    GradingPipeline,
    LLMClient,
    ModelRouter,
    Settings,
    grade_batch,
)
from homework_grader.corrections import CorrectionLog
from homework_grader.pipeline import (
    load_answer_key,
    save_answer_key,
    save_exam_report,
    save_review_queue,
    save_summary_csv,
)
from homework_grader.schemas import GradingResult, SubmissionImage
from homework_grader.store import FileSubmissionStore, SubmissionRecord

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Grade handwritten homework with a two-stage model pipeline.")
    parser.add_argument(
        "--mode",
        type=str,
        choices=["grade", "answer-key", "reanalyze"],
        default="grade",
        help="'grade' submissions, extract an 'answer-key' from a reference sheet, or 'reanalyze' flagged questions.",
    )
    parser.add_argument(
        "--input-dir",
        type=Path,
        default=Path("examples/input"),
        help="Folder containing submission images.",
    )
    parser.add_argument(
        "--glob",
        type=str,
        default="*",
        help="Glob pattern for submission images.",
    )
    parser.add_argument(
        "--answer-key",
        type=Path,
        default=None,
        help="Answer key JSON file. Omit to grade without a key (every result then needs review).",
    )
    parser.add_argument(
        "--answer-sheet",
        type=Path,
        default=None,
        help="Reference answer sheet image for --mode answer-key / reanalyze.",
    )
    parser.add_argument(
        "--assignment-id",
        type=str,
        default="assignment",
        help="Assignment id recorded on every submission.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Output directory for reports and the submission store.",
    )
    parser.add_argument("--domain", type=str, default=None, help="Subject domain, e.g. math or 數學.")
    parser.add_argument("--strict", action="store_true", help="Withhold credit for low-confidence transcriptions.")
    parser.add_argument(
        "--prior-weights",
        type=str,
        default=None,
        help="Comma-separated question types (1,2,3) the teacher expects most, in order.",
    )
    parser.add_argument(
        "--corrections",
        type=Path,
        default=None,
        help="JSON-lines log of past transcription corrections shown to the model as examples.",
    )
    parser.add_argument(
        "--model",
        type=str,
        action="append",
        default=None,
        help="Candidate model, in preference order. Repeat to add more. Overrides GRADER_MODEL_CANDIDATES.",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Seconds to wait between submissions. Overrides GRADER_BATCH_DELAY.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def build_item_breakdown(result: GradingResult) -> str:
    return "; ".join(f"{d.question_id}:{d.score:g}/{d.max_score:g}" for d in result.details)


def parse_prior_weights(value: Optional[str]) -> Optional[List[int]]:
    if not value:
        return None
    return [int(item) for item in value.split(",") if item.strip()]


def run_answer_key(args: argparse.Namespace, client: LLMClient, router: ModelRouter, hints: DomainHints) -> None:
    if args.answer_sheet is None or args.answer_key is None:
        raise SystemExit("--answer-sheet and --answer-key are required for this mode.")
    session = router.probe()
    extractor = AnswerKeyExtractor(client, hints)
    image = SubmissionImage.from_path(args.answer_sheet)
    prior = parse_prior_weights(args.prior_weights)

    if args.mode == "answer-key":
        answer_key = extractor.extract(image=image, session=session, domain=args.domain, prior_weight_types=prior)
    else:
        answer_key = extractor.reanalyze(
            image=image,
            answer_key=load_answer_key(args.answer_key),
            session=session,
            domain=args.domain,
            prior_weight_types=prior,
        )
    save_answer_key(args.answer_key, answer_key)
    flagged = [q.id for q in answer_key.flagged_questions]
    print(f"[OK] {len(answer_key.questions)} question(s), {answer_key.total_score:g} point(s) -> {args.answer_key}")
    if flagged:
        print(f"[REVIEW] Questions still needing re-analysis: {', '.join(flagged)}")


def run_grading(
    args: argparse.Namespace,
    settings: Settings,
    client: LLMClient,
    router: ModelRouter,
    hints: DomainHints,
) -> None:
    answer_key = load_answer_key(args.answer_key) if args.answer_key else None
    if answer_key is None:
        print("Grading without an answer key; every result will be flagged for review.")

    inputs = sorted(p for p in args.input_dir.glob(args.glob) if p.suffix.lower() in IMAGE_SUFFIXES)
    if not inputs:
        raise FileNotFoundError(f"No images matched {args.glob!r} in directory {str(args.input_dir)!r}.")

    store = FileSubmissionStore(args.output_dir / "submissions")
    submissions: List[SubmissionRecord] = []
    for path in inputs:
        record = SubmissionRecord(
            id=path.stem,
            assignment_id=args.assignment_id,
            student_id=path.stem,
            image=SubmissionImage.from_path(path),
        )
        store.add(record)
        submissions.append(record)

    correction_log = CorrectionLog(args.corrections) if args.corrections else None
    pipeline = GradingPipeline(AnswerExtractor(client, hints, correction_log), Grader(client, hints))
    options = GradeOptions(strict=args.strict, domain=args.domain)

    def on_progress(current: int, total: int) -> None:
        print(f"[{current}/{total}] {submissions[current - 1].id}")

    summary = grade_batch(
        submissions,
        store,
        pipeline,
        router,
        answer_key=answer_key,
        options=options,
        on_progress=on_progress,
        inter_call_delay=settings.batch_delay,
    )
    if summary.session is not None and summary.session.fell_back:
        print(f"[WARN] {summary.session.warnings[0]}")

    summary_rows: List[Dict[str, object]] = []
    review_items: List[Dict[str, object]] = []
    for submission in submissions:
        record = store.get(submission.id)
        if record is None or record.grading_result is None:
            continue
        result = record.grading_result
        save_exam_report(args.output_dir / f"{record.id}_report.json", record.id, result)
        max_score = sum(d.max_score for d in result.details)
        summary_rows.append(
            {
                "submission_id": record.id,
                "total_score": f"{result.total_score:.2f}",
                "max_score": f"{max_score:.2f}",
                "needs_review": result.needs_review,
                "item_breakdown": build_item_breakdown(result),
            }
        )
        if result.needs_review:
            review_items.append(
                {
                    "submission_id": record.id,
                    "total_score": result.total_score,
                    "review_reasons": result.review_reasons,
                    "feedback": result.feedback,
                }
            )
        flag_info = " (needs review)" if result.needs_review else ""
        print(f"[OK] {record.id}: {result.total_score:.2f}/{max_score:.2f}{flag_info}")

    summary_path = args.output_dir / "grades_summary.csv"
    save_summary_csv(summary_path, summary_rows)
    print(f"[DONE] {summary.success_count} graded, {summary.fail_count} failed. Summary written to {summary_path}")

    review_path = args.output_dir / "review_queue.json"
    save_review_queue(review_path, review_items)
    if review_items:
        print(f"[REVIEW] {len(review_items)} submission(s) need human review -> {review_path}")
    else:
        print("[REVIEW] No submissions flagged for review.")


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_env()
    if args.model:
        settings.model_candidates = list(args.model)
    if args.delay is not None:
        settings.batch_delay = args.delay

    hints = DomainHints.load(settings.domain_hints_path)
    client = LLMClient.from_settings(settings)
    router = ModelRouter(client, settings.model_candidates, settings.default_model)

    if args.mode == "grade":
        run_grading(args, settings, client, router, hints)
    else:
        run_answer_key(args, client, router, hints)


if __name__ == "__main__":
    main()
