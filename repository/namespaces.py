# repository/namespaces.py
from typing import Final

ROOT: Final[str] = "docanalysis"

JOBS: Final[str] = f"{ROOT}:jobs"
JOB_INDEX: Final[str] = f"{JOBS}:index"  # zset: job id -> created_at (epoch seconds)
BLOBS: Final[str] = f"{ROOT}:blobs"  # uploaded document bytes
CONCEPTS: Final[str] = f"{ROOT}:concepts"
CONCEPT_NAMES: Final[str] = f"{CONCEPTS}:names"  # lower(name) -> concept id
COURSES: Final[str] = f"{ROOT}:courses"  # per-course concept id sets
DOCUMENTS: Final[str] = f"{ROOT}:documents"
