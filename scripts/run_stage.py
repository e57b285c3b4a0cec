"""
Run a single pipeline stage invocation from the command line.

    python scripts/run_stage.py initial_fetch
    python scripts/run_stage.py normalize --batch-size 200
"""

import argparse
import asyncio
import json
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import validate_environment
from core.database import engine
from core.logging import setup_logging
from models.base import RunStatus, StageName
from pipeline.runner import PipelineRunner

logger = logging.getLogger(__name__)

BATCHED_STAGES = (StageName.NORMALIZE, StageName.ENRICH, StageName.PUBLISH, StageName.RETRY)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run one pipeline stage invocation")
    parser.add_argument("stage", choices=[stage.value for stage in StageName])
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the stage batch size (normalize, enrich, publish, retry)"
    )
    return parser.parse_args(argv)


async def run_stage(stage: StageName, batch_size: int = None) -> int:
    check = validate_environment()
    for error in check["errors"]:
        logger.warning(f"Configuration problem: {error}")

    options = {}
    if batch_size and stage in BATCHED_STAGES:
        options[stage] = {"batch_size": batch_size}

    try:
        result = await PipelineRunner(stage_options=options).run_stage_to_completion(stage)
    finally:
        await engine.dispose()

    logger.info(f"{stage.value}: {json.dumps(result.to_dict(), default=str)}")
    return 1 if result.status == RunStatus.FAILED else 0


if __name__ == "__main__":
    args = parse_args()
    setup_logging()
    sys.exit(asyncio.run(run_stage(StageName(args.stage), args.batch_size)))
