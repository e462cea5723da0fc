"""
GLPI REST API group store.

Uses the apirest.php endpoints: a session is opened with initSession, the
active entities are switched with changeActiveEntities so that /Group only
lists the groups of the requested entity scope, and groups are created and
updated with POST /Group and PUT /Group/:id.
"""

import json
import ssl
import base64
import logging
from typing import Dict, List, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection

from .base import GroupStoreBase, GroupStoreError, GroupStoreAuthenticationError, GROUP_COLUMNS

logger = logging.getLogger(__name__)

ROOT_ENTITY_ID = 0


class GlpiRestStore(GroupStoreBase):
    """Group store talking to the GLPI REST API."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        if not config.get('base_url'):
            raise GroupStoreError("REST store requires a 'base_url' setting")
        self.base_url = config['base_url']
        self.app_token = config.get('app_token')
        self.user_token = config.get('user_token')
        self.username = config.get('username')
        self.password = config.get('password')
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.page_size = config.get('page_size', 500)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.session_token = None
        self._active_entities = None
        self._groups_cache = None

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()
        if self.ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=self.ca_cert_file)
            except (OSError, ssl.SSLError) as e:
                raise GroupStoreError(f"Cannot load CA certificate {self.ca_cert_file}: {e}") from e

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.app_token:
            headers['App-Token'] = self.app_token
        if self.session_token:
            headers['Session-Token'] = self.session_token
        if extra:
            headers.update(extra)
        return headers

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None, params: Optional[Dict] = None) -> Tuple[Any, Dict[str, str]]:
        """
        Make an HTTP request to the GLPI API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: Endpoint path relative to base_url
            body: JSON body
            headers: Additional headers
            params: Query string parameters

        Returns:
            Tuple of (parsed JSON response, response headers)

        Raises:
            GroupStoreAuthenticationError: On HTTP 401
            GroupStoreError: On any other failure
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params)
        request_body = json.dumps(body) if body is not None else None

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, self._headers(headers))

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            response_headers = {k.lower(): v for k, v in response.getheaders()}
            logger.debug(f"Response status: {response.status} {response.reason}")
        except (ConnectionError, OSError) as e:
            self.connection = None
            raise GroupStoreError(f"Connection error to {self.name}: {e}") from e

        if response.status == 401:
            raise GroupStoreAuthenticationError(f"Authentication failed for {self.name}: {response_data}", 401)
        if response.status >= 400:
            raise GroupStoreError(f"HTTP {response.status} {response.reason}: {response_data}", response.status)

        try:
            return (json.loads(response_data) if response_data else {}), response_headers
        except json.JSONDecodeError as e:
            raise GroupStoreError(f"Invalid JSON response from {self.name}: {e}") from e

    def authenticate(self) -> bool:
        """Open an API session."""
        if self.user_token:
            auth = f"user_token {self.user_token}"
        elif self.username and self.password:
            credentials = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
            auth = f"Basic {credentials}"
        else:
            raise GroupStoreAuthenticationError("REST store requires user_token or username/password")

        data, _ = self.request('GET', '/initSession', headers={'Authorization': auth})
        self.session_token = data.get('session_token') if isinstance(data, dict) else None
        if not self.session_token:
            raise GroupStoreAuthenticationError(f"No session token returned by {self.name}")

        self.authenticated = True
        logger.info(f"Opened GLPI API session on {self.host}")
        return True

    def _activate_entities(self, entities_id: int, is_recursive: bool):
        if self._active_entities == (entities_id, is_recursive):
            return
        self.request('POST', '/changeActiveEntities',
                     body={'entities_id': entities_id, 'is_recursive': is_recursive})
        self._active_entities = (entities_id, is_recursive)

    def _fetch_groups(self) -> List[Dict[str, Any]]:
        """Fetch all groups visible in the active entities, page by page."""
        groups = []
        start = 0
        while True:
            end = start + self.page_size - 1
            data, headers = self.request('GET', '/Group', params={'range': f'{start}-{end}', 'expand_dropdowns': 'false'})
            if not isinstance(data, list):
                break
            groups.extend({k: v for k, v in row.items() if k in GROUP_COLUMNS} for row in data)

            # Content-Range: 0-499/1234
            total = None
            content_range = headers.get('content-range', '')
            if '/' in content_range:
                try:
                    total = int(content_range.rsplit('/', 1)[1])
                except ValueError:
                    total = None
            if not data or total is None or end + 1 >= total:
                break
            start = end + 1
        return groups

    def get_known_groups(self, entities_id: int, is_recursive: bool = True) -> List[Dict[str, Any]]:
        self._activate_entities(entities_id, is_recursive)
        rows = self._fetch_groups()
        logger.debug(f"{len(rows)} known groups in entity {entities_id} (recursive={is_recursive})")
        return rows

    def find_groups(self, **criteria) -> List[Dict[str, Any]]:
        if self._groups_cache is None:
            self._activate_entities(ROOT_ENTITY_ID, True)
            self._groups_cache = self._fetch_groups()
        return [
            dict(group) for group in self._groups_cache
            if all(group.get(key) == value for key, value in criteria.items())
        ]

    def get_group(self, group_id: int) -> Optional[Dict[str, Any]]:
        try:
            data, _ = self.request('GET', f'/Group/{group_id}')
        except GroupStoreAuthenticationError:
            raise
        except GroupStoreError as e:
            if e.status_code == 404:
                return None
            raise
        return data or None

    def add_group(self, data: Dict[str, Any]) -> int:
        result, _ = self.request('POST', '/Group', body={'input': data})
        group_id = result.get('id') if isinstance(result, dict) else None
        if not group_id:
            raise GroupStoreError(f"Group creation returned no id: {result}")
        group_id = int(group_id)
        if self._groups_cache is not None:
            row = {k: v for k, v in data.items() if k in GROUP_COLUMNS}
            row['id'] = group_id
            self._groups_cache.append(row)
        return group_id

    def update_group(self, group_id: int, data: Dict[str, Any]) -> bool:
        result, _ = self.request('PUT', f'/Group/{group_id}', body={'input': data})
        # [{"12": true, "message": ""}]
        if isinstance(result, list) and result:
            success = bool(result[0].get(str(group_id)))
        else:
            success = bool(result)
        if success and self._groups_cache is not None:
            for row in self._groups_cache:
                if row.get('id') == group_id:
                    row.update({k: v for k, v in data.items() if k in GROUP_COLUMNS and k != 'id'})
                    break
        return success

    def close(self):
        """Kill the API session and close the HTTP connection."""
        if self.session_token:
            try:
                self.request('GET', '/killSession')
            except GroupStoreError as e:
                logger.warning(f"Error closing GLPI API session: {e}")
            self.session_token = None
        if self.connection:
            self.connection.close()
            self.connection = None
        self._active_entities = None
        super().close()
