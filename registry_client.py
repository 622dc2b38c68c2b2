#!/usr/bin/env python3

#
# Copyright (C) 2024-2025 biomodal. All rights reserved.
#

import logging

import requests

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when the registry cannot return a list of actions."""


class RegistryClient:
    """
    Minimal REST client for the action registry.

    Example: RegistryClient("https://registry.example.com/api").list_actions(date(2023, 6, 1))
    """

    def __init__(self, base_url, timeout=None, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def list_actions(self, day) -> list:
        """
        List the actions recorded on `day`.

        Args:
            day (datetime.date): The day to query

        Returns:
            list: Action records, unmodified

        Raises:
            RegistryError: On transport errors, error statuses or malformed bodies
        """
        url = f"{self.base_url}/actions"
        params = {"date": day.strftime("%Y-%m-%d")}
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            raise RegistryError(f"GET {url} failed: {e}") from e
        except ValueError as e:
            raise RegistryError(f"GET {url} returned invalid JSON: {e}") from e

        if isinstance(body, dict) and isinstance(body.get("actions"), list):
            body = body["actions"]
        if not isinstance(body, list):
            raise RegistryError(f"GET {url} returned {type(body).__name__}, expected a list of actions")

        logger.debug(f"Registry returned {len(body)} actions for {params['date']}")
        return body
