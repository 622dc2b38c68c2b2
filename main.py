#!/usr/bin/env python3

#
# Copyright (C) 2024-2025 biomodal. All rights reserved.
#

import argparse
import logging
import os

import functions_framework
from google.cloud import storage

from archive_actions import ActionArchiver, dispatch, load_config, resolve_report_date
from registry_client import RegistryClient


def _log_level():
    """Return LOG_LEVEL if it names a logging level, INFO otherwise."""
    level = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        return "INFO"
    return level


# Configure logging for Cloud Functions
logging.basicConfig(
    level=_log_level(),
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


def build_archiver():
    """
    Build the archiver from the environment and Application Default Credentials.

    Returns:
        ActionArchiver: Archiver shared by every request
    """
    try:
        config = load_config()
        storage_client = storage.Client()
        registry = RegistryClient(config["registry_base_url"], timeout=config["registry_timeout"])
        return ActionArchiver(
            storage_client,
            config["bucket_name"],
            registry,
            public_host=config["storage_public_host"],
        )
    except Exception as e:
        logger.error(f"Failed to initialise the actions archiver: {e}. Exiting.")
        raise


# Build the archiver at startup
archiver = build_archiver()


@functions_framework.http
def actions_archiver(request):
    """
    Cloud Function entry point serving /_ah/health and /actions:upload.

    Args:
        request: HTTP request object

    Returns:
        tuple: Response body, status code and headers
    """
    return dispatch(request, archiver)


def run_once(date_value=None) -> str:
    """Archive one day from the command line."""
    report_date = resolve_report_date(date_value)
    return archiver.archive(report_date)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Archive the registry's actions for one day.")
    parser.add_argument("--date", help="Day to archive (YYYY-MM-DD), defaults to yesterday in UTC")
    args = parser.parse_args()
    logger.info(f"Published {run_once(args.date)}")
