"""Batch orchestration for resolving, merging, and promoting provider records."""

from .service import BatchReport, PromotionReport, RecordOutcome, SkippedRecord, SyncOrchestrator

__all__ = ["SyncOrchestrator", "BatchReport", "RecordOutcome", "SkippedRecord", "PromotionReport"]
