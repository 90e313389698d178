from eventplanner.dedup.merge_engine import MergeEngine, MergeOutcome, RejectedCandidate, fingerprint, fingerprint_key

__all__ = ["MergeEngine", "MergeOutcome", "RejectedCandidate", "fingerprint", "fingerprint_key"]
