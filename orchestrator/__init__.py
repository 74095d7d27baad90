"""Benchmark orchestration: registry, scheduler, metrics store and pipeline facade."""
