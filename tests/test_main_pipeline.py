#!/usr/bin/env python3
"""
Unit tests for the export pipeline.

Tests stage ordering, failure handling and exit codes with mock LDAP and
publisher systems.
"""

import copy
import tempfile
import unittest
from unittest.mock import Mock, patch, MagicMock
import sys
import os

# Add parent directory to path to import profile_import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from profile_import.main import ExportPipeline, PipelineError, EXIT_CODES
from profile_import.config import ConfigurationError
from profile_import.directory_client import DirectoryUnavailable, UserSelector
from profile_import.publishers.base import UploadFailure, ImportSubmissionFailure
from profile_import.shaping import RawUserRecord


@patch('profile_import.main.send_success_summary')
@patch('profile_import.main.send_failure_notification')
@patch('profile_import.main.setup_logging')
@patch('profile_import.main.LDAPDirectoryReader')
@patch('profile_import.main.load_config')
class TestExportPipeline(unittest.TestCase):
    """Test cases for ExportPipeline class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_config = {
            'ldap': {
                'server_url': 'ldaps://test.example.com',
                'bind_dn': 'CN=service,DC=test,DC=com',
                'bind_password': 'test_password',
                'user_base_dn': 'OU=Users,DC=test,DC=com'
            },
            'export': {
                'identity_attribute': 'mail',
                'attributes': ['Title'],
                'extension_attributes': [],
                'output_dir': 'output',
                'file_name': 'userprofiles.json',
                'write_local': False,
                'csv_fields': []
            },
            'publisher': {
                'name': 'SharePoint',
                'module': 'sharepoint',
                'base_url': 'https://contoso.sharepoint.com/sites/hr',
                'library': 'Shared Documents',
                'identity_type': 'Email',
                'identity_field': 'idName',
                'auth': {'method': 'basic', 'username': 'test', 'password': 'test'}
            },
            'mapping': {
                'properties': {'Title': 'SPS-JobTitle'},
                'strictness': 'fail'
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'test_logs',
                'retention_days': 7
            },
            'notifications': {
                'enable_email': False
            }
        }
        self.records = [
            RawUserRecord(attributes={'mail': 'a@x.com', 'Title': 'Eng'}),
            RawUserRecord(attributes={'Title': 'Mgr'}),
            RawUserRecord(attributes={'mail': 'b@x.com'}),
        ]
        self.document_url = 'https://contoso.sharepoint.com/sites/hr/Shared%20Documents/userprofiles.json'

    def _reader(self, mock_reader_class, records=None):
        reader = MagicMock()
        reader.list_users.return_value = self.records if records is None else records
        mock_reader_class.return_value = reader
        return reader

    def _publisher(self):
        publisher = MagicMock()
        publisher.name = 'SharePoint'
        publisher.authenticate.return_value = True
        publisher.upload.return_value = self.document_url
        publisher.submit_import.return_value = 'job-123'
        return publisher

    def test_successful_run(self, mock_load_config, mock_reader_class, mock_setup_logging,
                            mock_failure, mock_success):
        """Test a run that uploads the document and queues the import."""
        mock_load_config.return_value = self.test_config
        reader = self._reader(mock_reader_class)
        publisher = self._publisher()

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module', return_value=publisher):
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 0)
        self.assertEqual(pipeline.stats['job_id'], 'job-123')
        self.assertEqual(pipeline.stats['records_read'], 3)
        self.assertEqual(pipeline.stats['rows_shaped'], 2)
        self.assertEqual(pipeline.stats['rows_dropped'], 1)
        self.assertEqual(pipeline.stats['document_url'], self.document_url)

        reader.connect.assert_called_once()
        selector, attributes, extensions, identity = reader.list_users.call_args[0]
        self.assertTrue(selector.is_all)
        self.assertEqual((attributes, extensions, identity), (['Title'], [], 'mail'))

        content, library, file_name = publisher.upload.call_args[0]
        self.assertEqual(content, b'{"value": [{"idName": "a@x.com", "Title": "Eng"}, '
                                  b'{"idName": "b@x.com", "Title": ""}]}')
        self.assertEqual((library, file_name), ('Shared Documents', 'userprofiles.json'))
        publisher.submit_import.assert_called_once_with(
            'Email', 'idName', {'Title': 'SPS-JobTitle'}, self.document_url
        )
        mock_success.assert_called_once()
        mock_failure.assert_not_called()

    def test_configuration_error(self, mock_load_config, mock_reader_class, mock_setup_logging,
                                 mock_failure, mock_success):
        """Test handling of configuration errors."""
        mock_load_config.side_effect = ConfigurationError("Invalid config")

        pipeline = ExportPipeline()
        exit_code = pipeline.run()

        self.assertEqual(exit_code, 2)
        mock_reader_class.assert_not_called()
        mock_failure.assert_not_called()

    def test_duplicate_mapping_fails_before_directory_read(self, mock_load_config, mock_reader_class,
                                                           mock_setup_logging, mock_failure, mock_success):
        """A repeated source attribute stops the run before any network call."""
        config = copy.deepcopy(self.test_config)
        config['mapping']['properties'] = [
            {'source': 'Title', 'destination': 'SPS-JobTitle'},
            {'source': 'Title', 'destination': 'SPS-JobTitle'},
        ]
        mock_load_config.return_value = config

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module') as mock_load_publisher:
            exit_code = pipeline.run()

        self.assertEqual(exit_code, EXIT_CODES['mapping'])
        self.assertEqual(pipeline.stats['failed_stage'], 'mapping')
        mock_reader_class.assert_not_called()
        mock_load_publisher.assert_not_called()
        self.assertIn('DuplicateKey', mock_failure.call_args[0][1])

    def test_unknown_source_attribute_strict(self, mock_load_config, mock_reader_class,
                                             mock_setup_logging, mock_failure, mock_success):
        config = copy.deepcopy(self.test_config)
        config['mapping']['properties'] = {'Title': 'SPS-JobTitle', 'Dept': 'Department'}
        mock_load_config.return_value = config

        exit_code = ExportPipeline().run()

        self.assertEqual(exit_code, 4)
        mock_reader_class.assert_not_called()

    def test_unknown_source_attribute_lenient(self, mock_load_config, mock_reader_class,
                                              mock_setup_logging, mock_failure, mock_success):
        """With warn strictness the unknown attribute is still submitted."""
        config = copy.deepcopy(self.test_config)
        config['mapping'] = {'properties': {'Title': 'SPS-JobTitle', 'Dept': 'Department'},
                             'strictness': 'warn'}
        mock_load_config.return_value = config
        self._reader(mock_reader_class)
        publisher = self._publisher()

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module', return_value=publisher):
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 0)
        self.assertEqual(publisher.submit_import.call_args[0][2],
                         {'Title': 'SPS-JobTitle', 'Dept': 'Department'})

    def test_directory_unavailable(self, mock_load_config, mock_reader_class, mock_setup_logging,
                                   mock_failure, mock_success):
        """Test handling of LDAP connection errors."""
        mock_load_config.return_value = self.test_config
        reader = self._reader(mock_reader_class)
        reader.connect.side_effect = DirectoryUnavailable("LDAP server unreachable")

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module') as mock_load_publisher:
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 3)
        reader.connect.assert_called_once()
        reader.list_users.assert_not_called()
        mock_load_publisher.assert_not_called()
        mock_failure.assert_called_once()
        self.assertEqual(mock_failure.call_args[0][0], 'directory')

    def test_no_rows_with_identity(self, mock_load_config, mock_reader_class, mock_setup_logging,
                                   mock_failure, mock_success):
        mock_load_config.return_value = self.test_config
        self._reader(mock_reader_class, records=[RawUserRecord(attributes={'Title': 'Eng'})])

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module') as mock_load_publisher:
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 7)
        mock_load_publisher.assert_not_called()

    def test_upload_failure_skips_import(self, mock_load_config, mock_reader_class, mock_setup_logging,
                                         mock_failure, mock_success):
        """No import is submitted when the upload fails."""
        mock_load_config.return_value = self.test_config
        self._reader(mock_reader_class)
        publisher = self._publisher()
        publisher.upload.side_effect = UploadFailure("HTTP 403: Forbidden - Access denied.", status_code=403)

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module', return_value=publisher):
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 5)
        publisher.submit_import.assert_not_called()
        self.assertIsNone(pipeline.stats['job_id'])
        self.assertIn('Access denied.', mock_failure.call_args[0][1])
        mock_success.assert_not_called()

    def test_authentication_failure(self, mock_load_config, mock_reader_class, mock_setup_logging,
                                    mock_failure, mock_success):
        mock_load_config.return_value = self.test_config
        self._reader(mock_reader_class)
        publisher = self._publisher()
        publisher.authenticate.return_value = False

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module', return_value=publisher):
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 5)
        publisher.upload.assert_not_called()

    def test_import_rejected(self, mock_load_config, mock_reader_class, mock_setup_logging,
                             mock_failure, mock_success):
        mock_load_config.return_value = self.test_config
        self._reader(mock_reader_class)
        publisher = self._publisher()
        publisher.submit_import.side_effect = ImportSubmissionFailure("HTTP 400: Bad Request", status_code=400)

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module', return_value=publisher):
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 6)
        self.assertEqual(pipeline.stats['document_url'], self.document_url)
        self.assertIsNone(pipeline.stats['job_id'])

    @patch('profile_import.main.write_document')
    def test_dry_run_writes_locally_only(self, mock_write_document, mock_load_config, mock_reader_class,
                                         mock_setup_logging, mock_failure, mock_success):
        mock_load_config.return_value = self.test_config
        self._reader(mock_reader_class)
        mock_write_document.return_value = 'output/userprofiles.json'

        pipeline = ExportPipeline(selector=UserSelector.search('smith'), dry_run=True)
        with patch.object(pipeline, '_load_publisher_module') as mock_load_publisher:
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 0)
        mock_load_publisher.assert_not_called()
        mock_write_document.assert_called_once()
        self.assertEqual(pipeline.stats['local_path'], 'output/userprofiles.json')
        mock_success.assert_not_called()

    @patch('profile_import.main.write_document')
    def test_local_export_failure(self, mock_write_document, mock_load_config, mock_reader_class,
                                  mock_setup_logging, mock_failure, mock_success):
        config = copy.deepcopy(self.test_config)
        config['export']['write_local'] = True
        mock_load_config.return_value = config
        self._reader(mock_reader_class)
        mock_write_document.side_effect = PermissionError('read-only file system')

        pipeline = ExportPipeline()
        with patch.object(pipeline, '_load_publisher_module') as mock_load_publisher:
            exit_code = pipeline.run()

        self.assertEqual(exit_code, 8)
        mock_load_publisher.assert_not_called()

    def test_unexpected_error(self, mock_load_config, mock_reader_class, mock_setup_logging,
                              mock_failure, mock_success):
        mock_load_config.return_value = self.test_config
        reader = self._reader(mock_reader_class)
        reader.list_users.side_effect = RuntimeError('boom')

        exit_code = ExportPipeline().run()

        self.assertEqual(exit_code, 1)
        mock_failure.assert_called_once()


class TestPipelineFromConfigFile(unittest.TestCase):
    """Runs the pipeline against a configuration file written to disk."""

    CONFIG_TEXT = (
        "ldap:\n"
        "  server_url: ldaps://test.example.com\n"
        "  bind_dn: CN=service,DC=test,DC=com\n"
        "  bind_password: test_password\n"
        "export:\n"
        "  identity_attribute: mail\n"
        "  attributes: [Title]\n"
        "  write_local: false\n"
        "publisher:\n"
        "  module: sharepoint\n"
        "  base_url: https://contoso.sharepoint.com/sites/hr\n"
        "  library: Shared Documents\n"
        "  auth:\n"
        "    method: basic\n"
        "    username: test\n"
        "    password: test\n"
        "mapping:\n"
        "  properties:\n"
        "    Title: SPS-JobTitle\n"
        "    Title: Title\n"
    )

    def setUp(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(self.CONFIG_TEXT)
        self.config_path = f.name

    def tearDown(self):
        if os.path.exists(self.config_path):
            os.unlink(self.config_path)

    @patch('profile_import.main.send_failure_notification')
    @patch('profile_import.main.setup_logging')
    @patch('profile_import.main.LDAPDirectoryReader')
    def test_repeated_source_in_mapping_form_is_duplicate_key(self, mock_reader_class, mock_setup_logging,
                                                              mock_failure):
        """A source attribute repeated in the YAML mapping is a mapping failure, not a configuration one."""
        pipeline = ExportPipeline(config_path=self.config_path)
        exit_code = pipeline.run()

        self.assertEqual(exit_code, EXIT_CODES['mapping'])
        self.assertEqual(pipeline.stats['failed_stage'], 'mapping')
        self.assertIn('DuplicateKey', mock_failure.call_args[0][1])
        mock_reader_class.assert_not_called()


class TestPipelineHelpers(unittest.TestCase):
    """Test cases for pipeline helpers."""

    def test_pipeline_error_exit_codes(self):
        self.assertEqual(PipelineError('upload', 'x').exit_code, 5)
        self.assertEqual(PipelineError('unknown', 'x').exit_code, 1)
        self.assertEqual(str(PipelineError('import', 'rejected')), 'import stage failed: rejected')

    def test_load_publisher_module(self):
        pipeline = ExportPipeline()
        publisher = pipeline._load_publisher_module({
            'module': 'sharepoint',
            'base_url': 'https://contoso.sharepoint.com/sites/hr',
            'auth': {'method': 'bearer', 'token': 'abc'}
        })

        self.assertEqual(type(publisher).__name__, 'SharePointPublisher')

    def test_load_missing_publisher_module(self):
        from profile_import.publishers.base import PublisherError

        with self.assertRaises(PublisherError):
            ExportPipeline()._load_publisher_module({'module': 'does_not_exist', 'base_url': 'https://x'})


if __name__ == '__main__':
    unittest.main()
