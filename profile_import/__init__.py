"""
LDAP Profile Import - Export directory user attributes for a bulk profile property import.

This package reads user attributes from an LDAP directory, shapes them into the
JSON document expected by the SharePoint Online user profile bulk import, uploads
the document and queues the import job.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
