"""Fetch release keys, manifests and installer scripts over HTTPS."""

from __future__ import annotations

import time

import requests

from .errors import ToolkitError

TIMEOUT = 60
ATTEMPTS = 4
CHECK_TIMEOUT = 10


def _request(session: requests.Session, url: str) -> requests.Response:
    resp = session.get(url, timeout=TIMEOUT)
    for attempt in range(1, ATTEMPTS):
        if resp.status_code < 500 and resp.status_code != 429:
            break
        time.sleep(2**attempt)
        resp = session.get(url, timeout=TIMEOUT)
    return resp


def _fetch(url: str) -> requests.Response:
    try:
        with requests.Session() as session:
            resp = _request(session, url)
            resp.raise_for_status()
            return resp
    except requests.RequestException as exc:
        raise ToolkitError(f"Failed to download {url}: {exc}") from exc


def fetch_text(url: str) -> str:
    return _fetch(url).text


def fetch_bytes(url: str) -> bytes:
    """Download a release binary such as the ``argocd`` CLI."""

    return _fetch(url).content


def endpoint_status(url: str, verify: bool | str) -> int | None:
    """GET ``url`` once; ``None`` means the endpoint could not be reached."""

    try:
        resp = requests.get(url, timeout=CHECK_TIMEOUT, verify=verify)
    except requests.RequestException:
        return None
    return resp.status_code
