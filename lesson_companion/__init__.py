"""
Lesson companion core package.

This package currently focuses on the content-processing subsystem. It
exposes dataclasses for lessons, exercises and queued jobs, per-format
extractors behind an extraction router, a model-backed content analyzer,
a deterministic formatter, and a lease-based worker pool that drives
uploaded material through extraction, analysis, formatting and the
post-completion side effects.
"""
