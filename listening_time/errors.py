"""Exceptions and warning categories for the listening-time experiment engine."""

from __future__ import annotations


class InvalidParameter(ValueError):
    """Malformed simulation, model or power-analysis input."""


class EmptyDrawSet(ValueError):
    """Posterior summary requested on zero (usable) draws."""


class InvalidLevel(ValueError):
    """Credible level outside the open interval (0, 1)."""


class AnalysisCancelled(RuntimeError):
    """Power analysis stopped between trials at the caller's request."""


class SamplerNonConvergence(UserWarning):
    """Convergence diagnostics exceeded their threshold.

    Issued with ``warnings.warn`` and recorded on the decision summary; the
    summary is still returned because partial results remain informative.
    """
