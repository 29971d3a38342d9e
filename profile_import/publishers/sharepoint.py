"""
SharePoint Online publisher.

This module implements the PublisherBase interface against the SharePoint REST API:
the output document is uploaded to a document library of the configured site and
the user profile bulk import is queued through the tenant administration endpoint.
"""

import logging
from typing import Dict, Any, Optional
from urllib.parse import quote

from .base import PublisherBase, PublisherError, UploadFailure, ImportSubmissionFailure

logger = logging.getLogger(__name__)

# ImportProfilePropertiesUserIdType
IDENTITY_TYPE_CODES = {
    'Email': 0,
    'CloudId': 1,
    'PrincipalName': 2,
}

UPLOAD_PATH = "/_api/web/GetFolderByServerRelativeUrl('{folder}')/Files/add(url='{file}',overwrite=true)"
IMPORT_PATH = "/_api/Microsoft.Online.SharePoint.TenantManagement.Office365Tenant/QueueImportProfileProperties"


VERBOSE_HEADERS = {
    'Accept': 'application/json;odata=verbose',
    'Content-Type': 'application/json;odata=verbose',
}


def _odata_literal(value: str) -> str:
    """Quote a value for use inside an OData string literal in a URL path."""
    return quote(value.replace("'", "''"), safe="/")


def key_value_collection(property_map: Dict[str, str]) -> Dict[str, Any]:
    """
    Express a property map as the verbose OData ``Collection(SP.KeyValue)``
    that QueueImportProfileProperties expects, keeping the map's order.
    """
    return {
        '__metadata': {'type': 'Collection(SP.KeyValue)'},
        'results': [
            {
                '__metadata': {'type': 'SP.KeyValue'},
                'Key': source,
                'Value': destination,
                'ValueType': 'Edm.String',
            }
            for source, destination in property_map.items()
        ],
    }


class SharePointPublisher(PublisherBase):
    """
    SharePoint Online publisher implementation.

    Configuration:
        base_url: Site that owns the document library (e.g. https://contoso.sharepoint.com/sites/hr)
        admin_url: Tenant admin site; derived from base_url when omitted
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.admin_url = (config.get('admin_url') or self._derive_admin_url()).rstrip('/')
        logger.info(f"Initialized SharePoint publisher for {self.base_url}")

    def _derive_admin_url(self) -> str:
        """contoso.sharepoint.com -> contoso-admin.sharepoint.com"""
        host = self.parsed_url.hostname or ''
        tenant, _, domain = host.partition('.')
        if not tenant or not domain:
            raise PublisherError(f"Cannot derive admin URL from {self.base_url}; set publisher.admin_url")
        if not tenant.endswith('-admin'):
            tenant = f"{tenant}-admin"
        return f"{self.parsed_url.scheme}://{tenant}.{domain}"

    def _folder_server_relative_url(self, destination_library: str) -> str:
        library = destination_library.strip('/')
        if destination_library.startswith('/'):
            return '/' + library
        site_path = self.parsed_url.path.rstrip('/')
        return f"{site_path}/{library}"

    def upload(self, content: bytes, destination_library: str, file_name: str) -> str:
        """Upload the document to the library, overwriting a previous run's file."""
        if not destination_library or not file_name:
            raise UploadFailure("Destination library and file name are required")

        folder = self._folder_server_relative_url(destination_library)
        path = UPLOAD_PATH.format(folder=_odata_literal(folder), file=_odata_literal(file_name))

        logger.info(f"Uploading {len(content)} bytes to {folder}/{file_name}")
        try:
            response = self.request('POST', path, raw_body=content)
        except PublisherError as e:
            raise UploadFailure(f"Upload of {file_name} to {folder} failed: {e}",
                                status_code=e.status_code, remote_message=e.remote_message) from e

        server_relative_url = self._read_field(response, 'ServerRelativeUrl')
        if not server_relative_url:
            server_relative_url = f"{folder}/{file_name}"
            logger.debug("Upload response did not include ServerRelativeUrl, using requested location")

        url = f"{self.parsed_url.scheme}://{self.parsed_url.netloc}{quote(server_relative_url, safe='/')}"
        logger.info(f"Document available at {url}")
        return url

    def submit_import(self, identity_type: str, identity_field: str,
                      property_map: Dict[str, str], source_url: str) -> str:
        """Queue the profile property import and return its job identifier."""
        if identity_type not in IDENTITY_TYPE_CODES:
            raise ImportSubmissionFailure(f"Unknown identity type '{identity_type}'")

        body = {
            'idType': IDENTITY_TYPE_CODES[identity_type],
            'sourceDataIdProperty': identity_field,
            'propertyMap': key_value_collection(property_map),
            'sourceUri': source_url,
        }

        logger.info(f"Queuing profile import of {source_url} ({len(property_map)} mapped properties)")
        try:
            response = self.request('POST', self.admin_url + IMPORT_PATH, body=body, headers=VERBOSE_HEADERS)
        except PublisherError as e:
            raise ImportSubmissionFailure(f"Import submission rejected: {e}",
                                          status_code=e.status_code, remote_message=e.remote_message) from e

        job_id = self._read_field(response, 'value') or self._read_field(response, 'QueueImportProfileProperties')
        if not job_id:
            raise ImportSubmissionFailure(f"Import accepted but no job identifier returned: {response!r}")

        logger.info(f"Profile import queued with job id {job_id}")
        return str(job_id)

    def _read_field(self, response: Dict[str, Any], name: str) -> Optional[Any]:
        """Read a field from either an OData verbose (``d``) or a minimal metadata payload."""
        if not isinstance(response, dict):
            return None
        if name in response:
            return response[name]
        verbose = response.get('d')
        if isinstance(verbose, dict):
            return verbose.get(name)
        return None
