#!/usr/bin/env python3
"""
Microsoft Graph API client for the OneNote exporter.
Handles OAuth 2.0 token exchange/refresh and API requests with retry logic.
"""

import time
import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import requests

from run_log import logger

# ============================================================================
# Constants
# ============================================================================
GRAPH_BASE = "https://graph.microsoft.com/v1.0"
LOGIN_BASE = "https://login.microsoftonline.com"
DEFAULT_MAX_RETRIES = 10
DEFAULT_TIMEOUT = 60
CONTENT_TIMEOUT = 120
SCOPE = "Notes.Read Notes.Read.All User.Read offline_access"
REDIRECT_URI = "http://localhost:8080"


# ============================================================================
# Graph API Client with Robust Retry
# ============================================================================
class GraphClient:
    """Microsoft Graph API client with robust retry logic."""

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES):
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.token_expiry: Optional[datetime] = None
        self.client_id: Optional[str] = None
        self.client_secret: Optional[str] = None
        self.tenant_id: str = 'consumers'
        self.max_retries = max_retries
        self.request_count = 0
        self.error_count = 0

    @property
    def token_needs_refresh(self) -> bool:
        """Check if token is expired or expiring soon."""
        if not self.token_expiry:
            return False
        # Refresh if less than 5 minutes remaining
        return datetime.now() > self.token_expiry - timedelta(minutes=5)

    def get_auth_url(self, redirect_uri: str = REDIRECT_URI) -> str:
        """Generate OAuth authorization URL."""
        return (
            f"{LOGIN_BASE}/{self.tenant_id}/oauth2/v2.0/authorize"
            f"?client_id={self.client_id}"
            f"&response_type=code"
            f"&redirect_uri={redirect_uri}"
            f"&scope={SCOPE}"
        )

    def _token_request(self, data: Dict[str, str]) -> bool:
        token_url = f"{LOGIN_BASE}/{self.tenant_id}/oauth2/v2.0/token"
        try:
            response = requests.post(token_url, data=data, timeout=30)
            result = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Token request error: {e}")
            return False

        if 'access_token' not in result:
            logger.error(f"Token request failed: {result.get('error_description', 'Unknown')}")
            return False

        self.access_token = result['access_token']
        self.refresh_token = result.get('refresh_token', self.refresh_token)
        expires_in = result.get('expires_in', 3600)
        self.token_expiry = datetime.now() + timedelta(seconds=int(expires_in))
        return True

    def exchange_code_for_token(self, code: str, redirect_uri: str = REDIRECT_URI) -> bool:
        """Exchange authorization code for access token."""
        ok = self._token_request({
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'code': code,
            'redirect_uri': redirect_uri,
            'grant_type': 'authorization_code'
        })
        if ok:
            logger.info("✅ Successfully authenticated with Microsoft Graph")
        return ok

    def refresh_access_token(self) -> bool:
        """Refresh the access token using refresh token."""
        if not self.refresh_token:
            return False
        ok = self._token_request({
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': self.refresh_token,
            'grant_type': 'refresh_token'
        })
        if ok:
            logger.debug("Token refreshed")
        return ok

    @staticmethod
    def _backoff(attempt: int) -> float:
        return min(60, (2 ** attempt) + random.uniform(0, 2))

    def make_request(self, url: str, context: str = "",
                     timeout: int = DEFAULT_TIMEOUT) -> Optional[requests.Response]:
        """
        GET with retry logic for transient errors.

        Returns the response for 200 and for non-retryable statuses (403,
        404, ...), or None when every attempt failed.
        """
        if not url.startswith('http'):
            url = f"{GRAPH_BASE}{url}"

        headers = {'Authorization': f'Bearer {self.access_token}'}

        for attempt in range(1, self.max_retries + 1):
            self.request_count += 1

            try:
                if self.token_needs_refresh and self.refresh_token:
                    if self.refresh_access_token():
                        headers['Authorization'] = f'Bearer {self.access_token}'

                logger.debug(f"Request {self.request_count}: GET {url[:100]}...")
                response = requests.request('GET', url, headers=headers, timeout=timeout)

                if response.status_code == 200:
                    return response

                # Handle 401 - token expired
                if response.status_code == 401 and self.refresh_token:
                    logger.debug("Token expired, refreshing...")
                    if self.refresh_access_token():
                        headers['Authorization'] = f'Bearer {self.access_token}'
                        continue
                    logger.error("Token refresh failed")
                    self.error_count += 1
                    return None

                # Handle rate limiting (429)
                if response.status_code == 429:
                    try:
                        retry_after = int(response.headers.get('Retry-After', 10))
                    except ValueError:
                        retry_after = 10
                    logger.warning(f"Rate limited (429), waiting {retry_after}s... [{context}]")
                    logger.api_error('GET', url, 429, context, attempt, "Rate limited")
                    time.sleep(retry_after)
                    continue

                # Handle server errors (5xx)
                if response.status_code >= 500:
                    wait_time = self._backoff(attempt)
                    error_snippet = response.text[:200] if response.text else "No response body"
                    logger.warning(f"Server error {response.status_code}, retry {attempt}/{self.max_retries} "
                                   f"in {wait_time:.1f}s [{context}]")
                    logger.api_error('GET', url, response.status_code, context, attempt, error_snippet)
                    self.error_count += 1
                    time.sleep(wait_time)
                    continue

                # Other errors - log and return
                logger.api_error('GET', url, response.status_code, context, attempt,
                                 response.text[:200] if response.text else None)
                self.error_count += 1
                return response

            except requests.exceptions.Timeout:
                wait_time = self._backoff(attempt)
                logger.warning(f"Timeout, retry {attempt}/{self.max_retries} in {wait_time:.1f}s [{context}]")
                logger.api_error('GET', url, 0, context, attempt, "Timeout")
                self.error_count += 1
                time.sleep(wait_time)

            except requests.exceptions.ConnectionError as e:
                wait_time = self._backoff(attempt)
                logger.warning(f"Connection error, retry {attempt}/{self.max_retries} [{context}]")
                logger.api_error('GET', url, 0, context, attempt, str(e))
                self.error_count += 1
                time.sleep(wait_time)

        logger.error(f"Max retries ({self.max_retries}) exceeded [{context}]")
        return None

    def get_all_pages(self, initial_url: str, context: str = "") -> Tuple[List[Dict], List[Dict]]:
        """
        Follow all @odata.nextLink pages and return (items, errors).
        Returns tuple of (all_items, error_list) to track pagination failures.
        """
        all_items = []
        errors = []
        url = initial_url
        page_num = 0

        while url:
            page_num += 1
            page_context = f"{context} [page {page_num}]"

            response = self.make_request(url, context=page_context)

            if not response:
                errors.append({
                    'url': url,
                    'context': page_context,
                    'page': page_num,
                    'error': 'No response after retries'
                })
                break

            if response.status_code != 200:
                errors.append({
                    'url': url,
                    'context': page_context,
                    'page': page_num,
                    'status': response.status_code,
                    'error': response.text[:200] if response.text else 'Unknown'
                })
                break

            try:
                data = response.json()
            except ValueError as e:
                errors.append({
                    'url': url,
                    'context': page_context,
                    'page': page_num,
                    'error': f'JSON parse error: {e}'
                })
                break

            items = data.get('value', [])
            all_items.extend(items)

            # Check for nextLink (pagination)
            next_link = data.get('@odata.nextLink')
            if next_link:
                logger.debug(f"Following nextLink: page {page_num} -> {page_num + 1} "
                             f"({len(items)} items) [{context}]")
                url = next_link
                time.sleep(0.1)  # Be nice to the API
            else:
                url = None

        return all_items, errors

    # ========================================================================
    # OneNote API Methods
    # ========================================================================

    def get_user_info(self) -> Optional[Dict]:
        """Get signed-in user information."""
        response = self.make_request('/me', context='get user info')
        if response is not None and response.status_code == 200:
            return response.json()
        return None

    def get_notebooks(self) -> Tuple[List[Dict], List[Dict]]:
        return self.get_all_pages(
            f"{GRAPH_BASE}/me/onenote/notebooks"
            f"?$select=id,displayName,createdDateTime,lastModifiedDateTime&$orderby=displayName",
            context='list notebooks'
        )

    def get_sections(self, notebook_id: str) -> Tuple[List[Dict], List[Dict]]:
        return self.get_all_pages(
            f"{GRAPH_BASE}/me/onenote/notebooks/{notebook_id}/sections"
            f"?$select=id,displayName,createdDateTime,lastModifiedDateTime",
            context=f'list sections for notebook {notebook_id}'
        )

    def get_section_groups(self, notebook_id: str) -> Tuple[List[Dict], List[Dict]]:
        return self.get_all_pages(
            f"{GRAPH_BASE}/me/onenote/notebooks/{notebook_id}/sectionGroups"
            f"?$select=id,displayName,createdDateTime,lastModifiedDateTime",
            context=f'list section groups for notebook {notebook_id}'
        )

    def get_sections_in_group(self, group_id: str) -> Tuple[List[Dict], List[Dict]]:
        return self.get_all_pages(
            f"{GRAPH_BASE}/me/onenote/sectionGroups/{group_id}/sections"
            f"?$select=id,displayName,createdDateTime,lastModifiedDateTime",
            context=f'list sections in group {group_id}'
        )

    def get_nested_section_groups(self, group_id: str) -> Tuple[List[Dict], List[Dict]]:
        return self.get_all_pages(
            f"{GRAPH_BASE}/me/onenote/sectionGroups/{group_id}/sectionGroups"
            f"?$select=id,displayName,createdDateTime,lastModifiedDateTime",
            context=f'list nested groups in {group_id}'
        )

    def get_pages(self, section_id: str) -> Tuple[List[Dict], List[Dict]]:
        """Get all pages in a section with hierarchy info, in section order."""
        return self.get_all_pages(
            f"{GRAPH_BASE}/me/onenote/sections/{section_id}/pages"
            f"?$select=id,title,createdDateTime,lastModifiedDateTime,level,order"
            f"&$orderby=order&pagelevel=true",
            context=f'list pages for section {section_id}'
        )

    def get_page_content(self, page_id: str, context: str = "") -> Optional[requests.Response]:
        """Get the HTML content response of a page (None after exhausted retries)."""
        return self.make_request(
            f"{GRAPH_BASE}/me/onenote/pages/{page_id}/content",
            context=context or f'get content for page {page_id}',
            timeout=CONTENT_TIMEOUT
        )
