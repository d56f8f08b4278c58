"""Atrium: S3 bucket browser backend with listing cache and bucket-size aggregation."""

KEY_PREFIX = "atrium"
