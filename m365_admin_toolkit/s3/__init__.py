from .bucket import (
    S3BucketClient,
    S3Error,
    S3Object,
    DownloadSummary,
    parse_listing,
    local_path_for,
)

__all__ = [
    "S3BucketClient",
    "S3Error",
    "S3Object",
    "DownloadSummary",
    "parse_listing",
    "local_path_for",
]
