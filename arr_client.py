"""
==============================================================================
FILE: arr_client.py
ROLE: Sonarr / Radarr API Client
DESCRIPTION:
One client per managed instance. Wraps the v3 endpoints the sync engine
touches: custom formats, quality profiles and quality definitions, plus a
raw request escape hatch for endpoints without a dedicated method.
Every non-2xx answer raises ArrApiError so callers decide what to skip.
==============================================================================
"""

import logging

import requests

logger = logging.getLogger(__name__)


class ArrApiError(Exception):
    """Request to an instance failed. status is 0 when it never got an answer."""

    def __init__(self, message, status=0, response=None):
        super().__init__(message)
        self.status = status
        self.response = response


class ArrClient:
    """Thin requests.Session wrapper around one Sonarr/Radarr instance."""

    def __init__(self, base_url, api_key, label=None, timeout=30, session=None):
        self.base_url = base_url.rstrip('/')
        self.label = label or self.base_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'X-Api-Key': api_key, 'Content-Type': 'application/json'})

    def raw_request(self, method, path, payload=None, params=None):
        """Sends a request to any path and returns the decoded body (or None)."""
        url = f"{self.base_url}{path}"
        try:
            res = self.session.request(method, url, json=payload, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ArrApiError(f"[{self.label}] {method} {path} failed: {e}", status=0) from e

        if res.status_code not in [200, 201, 202, 204]:
            raise ArrApiError(
                f"[{self.label}] {method} {path} returned {res.status_code}",
                status=res.status_code,
                response=res.text[:500],
            )
        if not res.content:
            return None
        try:
            return res.json()
        except ValueError:
            return res.text

    def _api(self, method, endpoint, payload=None, params=None):
        return self.raw_request(method, f"/api/v3/{endpoint}", payload, params)

    # --- System ---
    def get_system_status(self):
        return self._api('GET', 'system/status')

    # --- Custom Formats ---
    def list_custom_formats(self):
        return self._api('GET', 'customformat') or []

    def get_custom_format(self, format_id):
        return self._api('GET', f'customformat/{format_id}')

    def create_custom_format(self, payload):
        return self._api('POST', 'customformat', payload)

    def update_custom_format(self, format_id, payload):
        return self._api('PUT', f'customformat/{format_id}', dict(payload, id=format_id))

    def delete_custom_format(self, format_id):
        self._api('DELETE', f'customformat/{format_id}')

    # --- Quality Profiles ---
    def list_quality_profiles(self):
        return self._api('GET', 'qualityprofile') or []

    def get_quality_profile(self, profile_id):
        return self._api('GET', f'qualityprofile/{profile_id}')

    def get_quality_profile_schema(self):
        return self._api('GET', 'qualityprofile/schema')

    def create_quality_profile(self, payload):
        return self._api('POST', 'qualityprofile', payload)

    def update_quality_profile(self, profile_id, payload):
        return self._api('PUT', f'qualityprofile/{profile_id}', dict(payload, id=profile_id))

    # --- Quality Definitions ---
    def list_quality_definitions(self):
        return self._api('GET', 'qualitydefinition') or []

    def update_quality_definitions(self, definitions):
        return self._api('PUT', 'qualitydefinition/update', definitions)

    def reset_quality_definitions(self):
        """Restores the factory min/preferred/max sizes."""
        return self._api('PUT', 'qualitydefinition/reset')


def build_clients(instances):
    """{instance id: ArrClient} for the instances list from config."""
    return {
        inst['id']: ArrClient(inst['url'], inst['api_key'], label=inst.get('label'))
        for inst in instances
    }
