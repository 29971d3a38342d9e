"""
Main pipeline for LDAP Profile Import.

This module contains the coordinator that reads users from LDAP, shapes them into
the import document, validates the property map, uploads the document and queues
the user profile import job. Stages run strictly in order and any failure stops
the run.
"""

import os
import sys
import logging
import importlib
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple

from profile_import.config import load_config, ConfigurationError
from profile_import.directory_client import LDAPDirectoryReader, DirectoryUnavailable, UserSelector
from profile_import.shaping import shape, ShapingError, NormalizedRow, OutputDocument, IDENTITY_KEY
from profile_import.mapping import PropertyMap, MappingError, build_and_validate
from profile_import.export import write_document, write_csv_projection
from profile_import.logging_setup import setup_logging
from profile_import.notifications import send_failure_notification, send_success_summary
from profile_import.publishers.base import PublisherBase, PublisherError

logger = logging.getLogger(__name__)

STAGE_CONFIGURATION = 'configuration'
STAGE_MAPPING = 'mapping'
STAGE_DIRECTORY = 'directory'
STAGE_SHAPE = 'shape'
STAGE_EXPORT = 'export'
STAGE_UPLOAD = 'upload'
STAGE_IMPORT = 'import'

EXIT_SUCCESS = 0
EXIT_CODES = {
    STAGE_CONFIGURATION: 2,
    STAGE_DIRECTORY: 3,
    STAGE_MAPPING: 4,
    STAGE_UPLOAD: 5,
    STAGE_IMPORT: 6,
    STAGE_SHAPE: 7,
    STAGE_EXPORT: 8,
}
EXIT_UNEXPECTED = 1


class PipelineError(Exception):
    """Raised when a pipeline stage fails; carries the stage name."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage} stage failed: {message}")

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.stage, EXIT_UNEXPECTED)


class ExportPipeline:
    """
    Coordinator for the directory export and profile import.

    Runs configuration → mapping validation → directory read → shaping →
    local export → upload → import submission, with no retries and no
    partial success.
    """

    def __init__(self, config_path: Optional[str] = None,
                 selector: Optional[UserSelector] = None,
                 dry_run: bool = False):
        """
        Initialize pipeline.

        Args:
            config_path: Path to configuration file
            selector: Users to export (all users when None)
            dry_run: Stop after writing local artifacts; never contact the publisher
        """
        self.config = None
        self.config_path = config_path
        self.selector = selector or UserSelector.all()
        self.dry_run = dry_run

        self.stats = {
            'records_read': 0,
            'rows_shaped': 0,
            'rows_dropped': 0,
            'document_bytes': 0,
            'local_path': None,
            'csv_path': None,
            'document_url': None,
            'job_id': None,
            'failed_stage': None,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self) -> int:
        """
        Run the complete export and import submission.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        self.stats['start_time'] = datetime.now()
        try:
            self._load_configuration()
            self._setup_logging()

            logger.info(f"Starting LDAP Profile Import ({self.selector}{', dry run' if self.dry_run else ''})")

            property_map = self._build_property_map()
            records = self._read_directory()
            rows, document = self._shape(records)
            self._write_local(rows, document)

            if self.dry_run:
                logger.info("Dry run: document not uploaded and no import queued")
            else:
                self._publish(document, property_map)

            self._finish()
            self._log_summary()
            if not self.dry_run:
                self._send_success_notification()
            return EXIT_SUCCESS

        except PipelineError as e:
            self._finish()
            self.stats['failed_stage'] = e.stage
            logger.error(str(e))
            if e.stage != STAGE_CONFIGURATION:
                self._send_failure_notification(e)
            return e.exit_code
        except Exception as e:
            self._finish()
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification(PipelineError('unexpected', str(e)))
            return EXIT_UNEXPECTED

    def _finish(self):
        self.stats['end_time'] = datetime.now()
        self.stats['runtime_seconds'] = (
            self.stats['end_time'] - self.stats['start_time']
        ).total_seconds()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            raise PipelineError(STAGE_CONFIGURATION, str(e)) from e

    def _setup_logging(self):
        """Configure logging based on configuration."""
        setup_logging(self.config.get('logging', {}))

    def _export_settings(self) -> Tuple[List[str], List[str], str]:
        export_config = self.config['export']
        return (
            list(export_config['attributes']),
            list(export_config.get('extension_attributes') or []),
            export_config['identity_attribute']
        )

    def _build_property_map(self) -> PropertyMap:
        """Build and validate the property map before anything is read or sent."""
        attributes, extension_attributes, identity_attribute = self._export_settings()
        mapping_config = self.config['mapping']
        known = {identity_attribute, *attributes, *extension_attributes}

        try:
            property_map = build_and_validate(
                mapping_config['properties'], known, mapping_config.get('strictness')
            )
        except MappingError as e:
            raise PipelineError(STAGE_MAPPING, f"{type(e).__name__}: {e}") from e

        logger.info(f"Property map validated with {len(property_map)} entries")
        return property_map

    def _read_directory(self) -> list:
        """Read the selected users from LDAP."""
        attributes, extension_attributes, identity_attribute = self._export_settings()
        reader = LDAPDirectoryReader(self.config['ldap'])

        try:
            with reader:
                reader.connect()
                records = reader.list_users(
                    self.selector, attributes, extension_attributes, identity_attribute
                )
        except DirectoryUnavailable as e:
            raise PipelineError(STAGE_DIRECTORY, str(e)) from e

        self.stats['records_read'] = len(records)
        return records

    def _shape(self, records: list) -> Tuple[List[NormalizedRow], OutputDocument]:
        """Shape directory records into import rows."""
        attributes, extension_attributes, identity_attribute = self._export_settings()

        try:
            rows, document = shape(records, attributes, extension_attributes, identity_attribute)
        except ShapingError as e:
            raise PipelineError(STAGE_SHAPE, str(e)) from e

        self.stats['rows_shaped'] = len(rows)
        self.stats['rows_dropped'] = len(records) - len(rows)

        if not rows:
            raise PipelineError(STAGE_SHAPE, f"None of the {len(records)} records has a "
                                             f"'{identity_attribute}' value; nothing to import")

        logger.info(f"Shaped {len(rows)} rows from {len(records)} records "
                    f"({self.stats['rows_dropped']} without identity)")
        return rows, document

    def _write_local(self, rows: List[NormalizedRow], document: OutputDocument):
        """Write the local JSON copy and the optional CSV projection."""
        export_config = self.config['export']
        if not export_config.get('write_local', True) and not self.dry_run:
            return

        output_dir = export_config.get('output_dir', 'output')
        try:
            self.stats['local_path'] = write_document(document, output_dir, export_config['file_name'])

            csv_fields = export_config.get('csv_fields') or []
            if csv_fields:
                csv_path = os.path.join(output_dir, export_config.get('csv_file_name', 'userprofiles.csv'))
                self.stats['csv_path'] = write_csv_projection(rows, csv_fields, csv_path)
        except (OSError, ValueError) as e:
            raise PipelineError(STAGE_EXPORT, str(e)) from e

    def _publish(self, document: OutputDocument, property_map: PropertyMap):
        """Upload the document and queue the import. Submission only follows a successful upload."""
        publisher_config = self.config['publisher']
        content = document.to_bytes()
        self.stats['document_bytes'] = len(content)

        try:
            publisher = self._load_publisher_module(publisher_config)
        except PublisherError as e:
            raise PipelineError(STAGE_UPLOAD, str(e)) from e

        with publisher:
            try:
                if not publisher.authenticate():
                    raise PipelineError(STAGE_UPLOAD, f"Authentication failed for publisher {publisher.name}")
                url = publisher.upload(content, publisher_config['library'], self.config['export']['file_name'])
            except PublisherError as e:
                raise PipelineError(STAGE_UPLOAD, str(e)) from e
            self.stats['document_url'] = url

            try:
                job_id = publisher.submit_import(
                    publisher_config.get('identity_type', 'Email'),
                    publisher_config.get('identity_field', IDENTITY_KEY),
                    property_map.to_dict(),
                    url
                )
            except PublisherError as e:
                raise PipelineError(STAGE_IMPORT, str(e)) from e

        self.stats['job_id'] = job_id
        logger.info(f"Import job {job_id} queued for {url}")

    def _load_publisher_module(self, publisher_config: Dict[str, Any]):
        """Dynamically load publisher module and create publisher instance."""
        module_name = publisher_config['module']
        try:
            publisher_module = importlib.import_module(f"profile_import.publishers.{module_name}")
        except ImportError as e:
            raise PublisherError(f"Failed to import publisher module {module_name}: {e}")

        publisher_class = None
        for attr_name in dir(publisher_module):
            attr = getattr(publisher_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, PublisherBase) and
                    attr is not PublisherBase):
                publisher_class = attr
                break

        if not publisher_class:
            raise PublisherError(f"No PublisherBase subclass found in module {module_name}")

        return publisher_class(publisher_config)

    def _send_failure_notification(self, error: PipelineError):
        """Send email notification for a failed stage."""
        notifications_config = (self.config or {}).get('notifications', {})
        additional_info = {
            'Records read': self.stats['records_read'],
            'Rows shaped': self.stats['rows_shaped'],
            'Document URL': self.stats['document_url'] or 'not uploaded',
        }
        try:
            send_failure_notification(error.stage, str(error), notifications_config, additional_info)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_success_notification(self):
        """Send email notification for a queued import."""
        try:
            send_success_summary(self.stats, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _log_summary(self):
        """Log final run statistics."""
        stats = self.stats
        logger.info("=== Import Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Records read: {stats['records_read']}")
        logger.info(f"Rows shaped: {stats['rows_shaped']}")
        logger.info(f"Rows dropped (no identity): {stats['rows_dropped']}")
        if stats['local_path']:
            logger.info(f"Local copy: {stats['local_path']}")
        if stats['document_url']:
            logger.info(f"Document URL: {stats['document_url']}")
        if stats['job_id']:
            logger.info(f"Import job id: {stats['job_id']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the export system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self.config = load_config(self.config_path)
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._build_property_map()
            health_status['checks']['mapping'] = {
                'status': 'pass',
                'message': 'Property map is valid'
            }
        except PipelineError as e:
            health_status['checks']['mapping'] = {'status': 'fail', 'message': str(e)}
            health_status['status'] = 'unhealthy'

        reader = LDAPDirectoryReader(self.config['ldap'])
        with reader:
            if reader.test_connection():
                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful'
                }
            else:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': 'LDAP connection failed'
                }
                health_status['status'] = 'unhealthy'

        try:
            self._load_publisher_module(self.config['publisher'])
            health_status['checks']['publisher'] = {
                'status': 'pass',
                'message': 'Publisher module loaded successfully'
            }
        except Exception as e:
            health_status['checks']['publisher'] = {
                'status': 'fail',
                'message': f'Publisher loading failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Export LDAP user attributes and queue a profile property import')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--search', '-s', help='Only export users matching this search string')
    parser.add_argument('--dry-run', action='store_true',
                        help='Write the document locally without uploading or queuing an import')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of export')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    try:
        selector = UserSelector.search(args.search) if args.search is not None else UserSelector.all()
    except ValueError as e:
        parser.error(str(e))

    pipeline = ExportPipeline(config_path=args.config, selector=selector, dry_run=args.dry_run)

    if args.health_check:
        health_status = pipeline.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        from profile_import.notifications import send_test_notification
        try:
            config = load_config(args.config)
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        if send_test_notification(config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        exit_code = pipeline.run()
        if exit_code == EXIT_SUCCESS and pipeline.stats['job_id']:
            print(pipeline.stats['job_id'])
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
