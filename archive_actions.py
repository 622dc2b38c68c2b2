#!/usr/bin/env python3

#
# Copyright (C) 2024-2025 biomodal. All rights reserved.
#

import datetime
import io
import json
import logging
import os
import shutil

import pytz

logger = logging.getLogger(__name__)

# Shared by the registry query and the object key
DATE_FORMAT = "%Y-%m-%d"

DEFAULT_REGISTRY_BASE_URL = "https://registry.example.com/api"
DEFAULT_STORAGE_PUBLIC_HOST = "storage.googleapis.com"

CONTENT_TYPE_JSON = "application/json"
PUBLIC_READ_ACL = "publicRead"

UPLOAD_PATH = "/actions:upload"
HEALTH_CHECK_PATH = "/_ah/health"

TEXT_HEADERS = {"Content-Type": "text/plain; charset=utf-8"}


class ConfigurationError(Exception):
    """Raised at startup when the process environment is incomplete."""


class ArchiveError(Exception):
    """Base class for request-scoped archival failures."""

    status_code = 500
    message = "could not archive actions"
    headers = {}

    def __init__(self, cause=None):
        self.cause = cause
        text = f"{self.message}: {cause}" if cause is not None else self.message
        super().__init__(text)


class MethodNotAllowed(ArchiveError):
    status_code = 405
    message = "method not allowed"
    headers = {"Allow": "PUT"}


class InvalidDateFormat(ArchiveError):
    status_code = 400
    message = "could not parse date"


class UpstreamFetchFailed(ArchiveError):
    message = "could not get actions"


class SerializationFailed(ArchiveError):
    message = "could not marshal actions"


class StorageWriteFailed(ArchiveError):
    message = "could not write file"


class StoragePutFailed(ArchiveError):
    message = "could not put file"


def _get_float_env(name, default=None):
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    return value


def load_config():
    """
    Load the archiver configuration from the process environment.

    Returns:
        dict: Configuration values

    Raises:
        ConfigurationError: If GCLOUD_STORAGE_BUCKET is not set
    """
    bucket_name = os.environ.get("GCLOUD_STORAGE_BUCKET", "").strip()
    if not bucket_name:
        logger.error("Missing required environment variable GCLOUD_STORAGE_BUCKET.")
        raise ConfigurationError("GCLOUD_STORAGE_BUCKET must be set")

    config = {
        "bucket_name": bucket_name,
        "registry_base_url": os.environ.get("REGISTRY_BASE_URL", DEFAULT_REGISTRY_BASE_URL).strip(),
        "registry_timeout": _get_float_env("REGISTRY_TIMEOUT_SECONDS"),
        "storage_public_host": os.environ.get("STORAGE_PUBLIC_HOST", DEFAULT_STORAGE_PUBLIC_HOST).strip(),
    }
    logger.info(f"Loaded config: bucket '{bucket_name}', registry '{config['registry_base_url']}'")
    return config


def format_report_date(report_date: datetime.date) -> str:
    return report_date.strftime(DATE_FORMAT)


def resolve_report_date(value=None, now=None) -> datetime.date:
    """
    Resolve the date an archival run covers.

    Args:
        value (str): Optional date in YYYY-MM-DD form
        now (datetime.datetime): Invocation time, defaults to the current UTC time

    Returns:
        datetime.date: The requested date, or the day before `now`

    Raises:
        InvalidDateFormat: If `value` is not a YYYY-MM-DD date
    """
    if not value:
        if now is None:
            now = datetime.datetime.now(pytz.utc)
        return (now - datetime.timedelta(days=1)).date()

    try:
        report_date = datetime.datetime.strptime(value, DATE_FORMAT).date()
    except ValueError as e:
        raise InvalidDateFormat(e) from e

    # strptime accepts unpadded fields such as 2023-6-1
    if format_report_date(report_date) != value:
        raise InvalidDateFormat(f"{value!r} is not in YYYY-MM-DD form")
    return report_date


class ActionArchiver:
    """Publishes the registry's actions for one day as a public JSON object."""

    def __init__(self, storage_client, bucket_name, registry, public_host=DEFAULT_STORAGE_PUBLIC_HOST):
        self.storage_client = storage_client
        self.bucket_name = bucket_name
        self.registry = registry
        self.public_host = public_host

    def object_name(self, report_date: datetime.date) -> str:
        return format_report_date(report_date) + ".json"

    def public_url(self, object_name: str) -> str:
        return f"https://{self.public_host}/{self.bucket_name}/{object_name}"

    def archive(self, report_date: datetime.date) -> str:
        """
        Fetch, serialize and publish the actions for `report_date`.

        Args:
            report_date (datetime.date): The day to archive

        Returns:
            str: Public URL of the published object

        Raises:
            ArchiveError: On the first failing step
        """
        day = format_report_date(report_date)

        try:
            actions = list(self.registry.list_actions(report_date))
        except Exception as e:
            logger.error(f"Error fetching actions for {day}: {e}")
            raise UpstreamFetchFailed(e) from e
        logger.info(f"Fetched {len(actions)} actions for {day}")

        try:
            payload = json.dumps(actions, allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.error(f"Error serializing actions for {day}: {e}")
            raise SerializationFailed(e) from e

        object_name = self.object_name(report_date)
        blob = self.storage_client.bucket(self.bucket_name).blob(object_name)
        logger.info(f"Uploading {len(payload)} bytes to gs://{self.bucket_name}/{object_name}")

        # The ACL is part of the upload request, so the object is public from creation
        try:
            writer = blob.open(
                "wb",
                content_type=CONTENT_TYPE_JSON,
                predefined_acl=PUBLIC_READ_ACL,
                retry=None,
            )
        except Exception as e:
            logger.error(f"Error opening gs://{self.bucket_name}/{object_name}: {e}")
            raise StorageWriteFailed(e) from e

        try:
            shutil.copyfileobj(io.BytesIO(payload), writer)
        except Exception as e:
            logger.error(f"Error writing gs://{self.bucket_name}/{object_name}: {e}")
            self._terminate(writer, object_name)
            raise StorageWriteFailed(e) from e

        try:
            writer.close()
        except Exception as e:
            logger.error(f"Error finalizing gs://{self.bucket_name}/{object_name}: {e}")
            raise StoragePutFailed(e) from e

        url = self.public_url(object_name)
        logger.info(f"Published actions for {day} at {url}")
        return url

    def _terminate(self, writer, object_name):
        """
        Cancel an upload without committing it.

        A later close() on a terminated writer finds its buffer closed and
        uploads nothing, so garbage collection cannot publish a partial object.
        """
        try:
            writer.terminate()
        except Exception as e:
            logger.error(f"Error cancelling upload of gs://{self.bucket_name}/{object_name}: {e}")


def health_check_handler(request):
    return "ok", 200, TEXT_HEADERS


def upload_handler(request, archiver, now=None):
    """
    Handle PUT /actions:upload.

    Args:
        request: HTTP request object
        archiver (ActionArchiver): Archiver built at startup
        now (datetime.datetime): Invocation time override

    Returns:
        tuple: Response body, status code and headers
    """
    try:
        if request.method != "PUT":
            raise MethodNotAllowed()
        report_date = resolve_report_date(request.args.get("date"), now=now)
        logger.info(f"Archiving actions for {format_report_date(report_date)}")
        url = archiver.archive(report_date)
    except ArchiveError as e:
        logger.warning(f"Upload request failed ({e.status_code}): {e}")
        return str(e), e.status_code, {**TEXT_HEADERS, **e.headers}

    return url, 200, TEXT_HEADERS


def dispatch(request, archiver):
    """Route a request to the health check or the upload handler."""
    path = request.path.rstrip("/") or "/"
    if path == HEALTH_CHECK_PATH:
        return health_check_handler(request)
    if path == UPLOAD_PATH:
        return upload_handler(request, archiver)
    return "not found", 404, TEXT_HEADERS
