from typing import Any, List, Optional, Tuple

import pytest

from core.job_queue import JobQueue
from service.analysis_service import AnalysisService, build_analysis_service

PAPER = (
    "FACULTY OF SCIENCE\n"
    "1. Define entropy and explain why it never decreases in an isolated system. (5 marks)\n"
    "2. Describe the Carnot cycle and derive its efficiency. (10 marks)\n"
    "3. Explain how a refrigerator moves heat from a cold body to a hot one.\n"
)


@pytest.fixture
def paper_path(tmp_path):
    path = tmp_path / "paper.txt"
    path.write_text(PAPER)
    return str(path)


@pytest.fixture
async def harness(fake_redis, make_queue, scripted_ai):
    """
    Factory for (queue, service) pairs wired to the in-memory Redis.
    Queues are started here and stopped on teardown.
    """
    built: List[JobQueue] = []

    async def _build(ai: Optional[Any] = None, *, start: bool = True, encoder=None, **queue_opts) -> Tuple[JobQueue, AnalysisService]:
        queue = make_queue(**queue_opts)
        service = build_analysis_service(queue, ai=ai or scripted_ai(), encoder=encoder)
        service.install()
        if start:
            await queue.start()
        built.append(queue)
        return queue, service

    yield _build

    for queue in built:
        await queue.stop()
