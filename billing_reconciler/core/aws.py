from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config

from .settings import Settings


def dynamodb_resource(settings: Settings) -> Any:
    session = boto3.session.Session(region_name=settings.aws_region or "us-east-1")
    config = Config(
        connect_timeout=settings.ddb_connect_timeout_seconds,
        read_timeout=settings.ddb_read_timeout_seconds,
        retries={"max_attempts": settings.ddb_max_attempts, "mode": "standard"},
    )
    kwargs: dict[str, Any] = {"config": config}
    if settings.dynamodb_endpoint_url:
        kwargs["endpoint_url"] = settings.dynamodb_endpoint_url
    return session.resource("dynamodb", **kwargs)
