"""Command line interface for the S3 detach tool."""
