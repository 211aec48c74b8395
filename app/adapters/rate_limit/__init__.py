"""Bucket store adapters.

The limiter talks to an abstract key-value contract so the same bucket
protocol runs against Redis in production and an in-process store in
development and tests.
"""
