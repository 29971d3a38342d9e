#!/usr/bin/env python3
"""
Validation script for LDAP Profile Import.

Checks that dependencies and package modules import, runs a small offline
export through shaping and mapping validation, and exercises the CLI.
"""

import sys
import importlib


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate required and test dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
    ]
    test_dependencies = [
        ("pytest", "pytest"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate package modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "profile_import.config",
        "profile_import.directory_client",
        "profile_import.shaping",
        "profile_import.mapping",
        "profile_import.export",
        "profile_import.logging_setup",
        "profile_import.notifications",
        "profile_import.main",
        "profile_import.publishers.base",
        "profile_import.publishers.sharepoint",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok

    return all_ok


def validate_functionality():
    """Shape sample records and validate a property map without any network access."""
    print("\n=== Functionality Validation ===")

    try:
        from profile_import.shaping import shape, OutputDocument
        from profile_import.mapping import build_and_validate

        records = [
            {'mail': 'a@example.com', 'title': 'Engineer'},
            {'mail': '', 'title': 'Manager'},
        ]
        rows, document = shape(records, ['title'], [], 'mail')
        if len(rows) != 1 or rows[0]['idName'] != 'a@example.com':
            print("  ✗ Shaping produced unexpected rows")
            return False
        print("  ✓ Record shaping")

        if list(OutputDocument.from_json(document.to_bytes()).rows) != rows:
            print("  ✗ Output document did not parse back to the same rows")
            return False
        print("  ✓ Output document serialization")

        build_and_validate({'title': 'SPS-JobTitle'}, {'mail', 'title'})
        print("  ✓ Property map validation")

        from profile_import.publishers.sharepoint import SharePointPublisher
        SharePointPublisher({'base_url': 'https://contoso.sharepoint.com/sites/hr',
                             'auth': {'method': 'bearer', 'token': 'validation'}})
        print("  ✓ Publisher instantiation")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "profile_import.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode != 0:
            print("  ✗ Help command failed")
            return False
        print("  ✓ Help command working")

        # A missing configuration file is a configuration stage failure
        result = subprocess.run([sys.executable, "-m", "profile_import.main",
                                 "--config", "does-not-exist.yaml"],
                                capture_output=True, text=True)
        if result.returncode != 2:
            print(f"  ✗ Missing configuration returned exit code {result.returncode}, expected 2")
            return False
        print("  ✓ Configuration failure exit code")

        return True

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("LDAP Profile Import - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in LDAP and SharePoint settings")
        print("  2. Test with: python -m profile_import.main --health-check")
        print("  3. Preview the document: python -m profile_import.main --dry-run")
        print("  4. Run the import: python -m profile_import.main")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
