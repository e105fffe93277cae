#!/usr/bin/env python
# coding: utf-8

"""
Exceptions raised by the analysis pipelines
"""

from typing import Iterable, Optional


class SampleMismatchError(ValueError):
    """Sample sheet rows do not correspond to the matrix columns."""

    def __init__(
        self,
        missing: Iterable[str] = (),
        extra: Iterable[str] = (),
    ):
        self.missing = sorted(missing)
        self.extra = sorted(extra)
        parts = []
        if self.missing:
            parts.append(f"matrix columns without sample rows: {self.missing}")
        if self.extra:
            parts.append(f"sample rows without matrix columns: {self.extra}")
        super().__init__("Sample table does not match matrix; " + "; ".join(parts))


class UnknownFeatureError(ValueError):
    """Unrecognised genomic feature name in a precedence list."""


class StageError(RuntimeError):
    """Fatal failure of one pipeline stage for one tissue."""

    def __init__(self, tissue: str, stage: str, cause: Optional[BaseException] = None):
        self.tissue = tissue
        self.stage = stage
        self.cause = cause
        super().__init__(f"[{tissue}] {stage} failed: {cause}")
