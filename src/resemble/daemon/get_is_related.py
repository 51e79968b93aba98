"""Local scoring daemon launched by the resemble supervisor.

This script is staged into the models directory and run in its own
interpreter:

    python get_is_related.py --host 127.0.0.1 --port 7860

Endpoints (request body ``{"data": [...], "threshold": t}``, response
``{"data": ...}``):

- HEAD /               200 once the embedding model is loaded
- POST /run/predict    "1" related, "0" inconclusive, "-1" unrelated
- POST /run/distance   cosine distance between the two texts
- POST /run/judge      cross-encoder relatedness score in [0, 1]
- POST /run/recommend  list of modernization recommendations

Model inference is CPU-bound and runs in the default executor, so health
checks and concurrent requests are answered while a model is busy.
"""

import argparse
import asyncio
import sys
from collections.abc import Callable
from functools import partial
from typing import Any, TypeVar

import numpy as np
import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from resemble.logging import configure_logging

EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
JUDGE_MODEL = "cross-encoder/stsb-distilroberta-base"
RECOMMEND_MODEL = "google/flan-t5-base"

DEFAULT_THRESHOLD = 0.0755

# Distances within this band above the threshold are reported as inconclusive
INCONCLUSIVE_BAND = 0.15

logger = structlog.get_logger()

_models: dict[str, Any] = {}

T = TypeVar("T")


def embedder() -> Any:
    if "embedder" not in _models:
        from sentence_transformers import SentenceTransformer

        _models["embedder"] = SentenceTransformer(EMBEDDING_MODEL)
    return _models["embedder"]


def judge() -> Any:
    if "judge" not in _models:
        from sentence_transformers import CrossEncoder

        _models["judge"] = CrossEncoder(JUDGE_MODEL)
    return _models["judge"]


def generator() -> Any:
    if "generator" not in _models:
        from transformers import pipeline

        _models["generator"] = pipeline("text2text-generation", model=RECOMMEND_MODEL)
    return _models["generator"]


def cosine_distance(t1: str, t2: str) -> float:
    vectors = embedder().encode([t1, t2], normalize_embeddings=True)
    return float(1.0 - np.dot(vectors[0], vectors[1]))


def band(distance: float, threshold: float) -> str:
    """Tri-state verdict for a distance against the related threshold."""
    if distance <= threshold:
        return "1"
    if distance <= threshold + INCONCLUSIVE_BAND:
        return "0"
    return "-1"


def judge_score(t1: str, t2: str) -> float:
    return float(judge().predict([(t1, t2)])[0])


def recommendations_for(code: str) -> list[str]:
    prompt = (
        "List short recommendations, one per line, for modernizing "
        f"this method:\n{code}"
    )
    generated = generator()(prompt, max_new_tokens=128)[0]["generated_text"]
    return [line.strip(" -*") for line in generated.splitlines() if line.strip(" -*")]


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    # Run CPU-bound inference in executor to avoid blocking event loop
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, partial(func, *args))


async def health(request: Request) -> Response:
    return Response(status_code=200)


async def predict(request: Request) -> JSONResponse:
    body = await request.json()
    t1, t2 = body["data"]
    threshold = float(body.get("threshold", DEFAULT_THRESHOLD))
    distance = await run_blocking(cosine_distance, t1, t2)
    verdict = band(distance, threshold)
    logger.debug("daemon.predicted", distance=distance, verdict=verdict)
    return JSONResponse({"data": verdict})


async def distance(request: Request) -> JSONResponse:
    body = await request.json()
    t1, t2 = body["data"]
    return JSONResponse({"data": await run_blocking(cosine_distance, t1, t2)})


async def judge_related(request: Request) -> JSONResponse:
    body = await request.json()
    t1, t2 = body["data"]
    return JSONResponse({"data": await run_blocking(judge_score, t1, t2)})


async def recommend(request: Request) -> JSONResponse:
    body = await request.json()
    (code,) = body["data"]
    items = await run_blocking(recommendations_for, code)
    logger.debug("daemon.recommended", count=len(items))
    return JSONResponse({"data": items})


def create_app() -> Starlette:
    routes = [
        Route("/", health, methods=["GET", "HEAD"]),
        Route("/run/predict", predict, methods=["POST"]),
        Route("/run/distance", distance, methods=["POST"]),
        Route("/run/judge", judge_related, methods=["POST"]),
        Route("/run/recommend", recommend, methods=["POST"]),
    ]
    return Starlette(routes=routes)


def main() -> None:
    parser = argparse.ArgumentParser(description="resemble scoring daemon")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=7860)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    # stdout is the supervisor's daemon.log
    configure_logging(log_level=args.log_level, stream=sys.stdout)

    logger.info("daemon.loading_model", model=EMBEDDING_MODEL)
    # Load the embedding model before answering health checks
    embedder()
    logger.info("daemon.serving", host=args.host, port=args.port)
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
