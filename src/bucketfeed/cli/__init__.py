"""
CLI commands for BucketFeed.
"""
