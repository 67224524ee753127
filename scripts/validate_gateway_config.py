#!/usr/bin/env python3
"""
Gateway configuration validation script.
Checks topology documents the way the gateway does at startup, without
connecting to any backend.
"""

import sys
from pathlib import Path
from typing import List

from shared.errors import ConfigurationError
from service_gateway.app.registry.loader import ConfigLoader

DEFAULT_CONFIG = Path("service_gateway/config/gateway.yaml")


def validate_config(config_path: Path) -> List[str]:
    """Validate a single topology document; returns the problems found."""
    try:
        snapshot = ConfigLoader(config_path).load()
    except ConfigurationError as e:
        errors = [e.message]
        errors.extend(str(detail) for detail in e.details.get("errors", []))
        return errors

    if not snapshot.descriptors:
        return ["configuration declares no resources"]
    return []


def main(argv: List[str] = None) -> int:
    """Validate every document given on the command line (default: the bundled one)."""
    paths = [Path(p) for p in (argv if argv is not None else sys.argv[1:])] or [DEFAULT_CONFIG]
    print("Validating gateway configuration...")

    total_errors = 0
    for path in paths:
        errors = validate_config(path)
        if errors:
            print(f"❌ {path}: {len(errors)} validation errors")
            for error in errors:
                print(f"   - {error}")
            total_errors += len(errors)
        else:
            print(f"✅ {path}: configuration is valid")

    print(f"\nValidation complete: {total_errors} total errors")
    return 0 if total_errors == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
