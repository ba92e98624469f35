"""Candidate model containers."""

from sdmstack.models.base import CandidateModel, ModelConfiguration

__all__ = ["CandidateModel", "ModelConfiguration"]
