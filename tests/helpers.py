from __future__ import annotations

from typing import Any, Tuple


def extraction(*entries: Tuple[str, str, float]) -> dict:
    return {
        "answers": [
            {"questionId": qid, "studentAnswer": answer, "confidence": confidence}
            for qid, answer, confidence in entries
        ]
    }


def grading(*details: dict, **extra: Any) -> dict:
    payload = {"totalScore": sum(d.get("score", 0) for d in details), "details": list(details)}
    payload.update(extra)
    return payload


def detail(qid: str, answer: str, score: float, max_score: float, **extra: Any) -> dict:
    data = {
        "questionId": qid,
        "studentAnswer": answer,
        "score": score,
        "maxScore": max_score,
        "isCorrect": score >= max_score,
        "reason": "graded",
        "confidence": 95,
    }
    data.update(extra)
    return data
