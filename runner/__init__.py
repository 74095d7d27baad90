"""Benchmark process execution: process runner, fio command builder and output parser."""
