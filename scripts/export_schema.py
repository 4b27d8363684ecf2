#!/usr/bin/env python3
"""
Export JSON Schemas for the claim record and the submission input.

Also validates any example submissions found in data/examples/.
"""

import json
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from src.claims.schema import Claim, ClaimInput


def export_json_schema(output_dir: str = "data") -> dict:
    """Write claim_schema.json and claim_input_schema.json."""
    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)

    schemas = {
        "claim_schema.json": Claim.model_json_schema(mode="serialization"),
        "claim_input_schema.json": ClaimInput.model_json_schema(),
    }
    for filename, schema in schemas.items():
        target = output / filename
        with open(target, "w", encoding="utf-8") as f:
            json.dump(schema, f, indent=2, ensure_ascii=False)
        print(f"✓ {schema['title']} schema exported to: {target}")
        print(f"  Properties: {len(schema['properties'])} top-level fields")
    return schemas


def validate_example_claims(examples_dir: str = "data/examples") -> tuple:
    """Check example submissions against the input rules."""
    example_files = sorted(Path(examples_dir).glob("claim_*.json"))

    if not example_files:
        print(f"⚠ No example claim files found in {examples_dir}/")
        return 0, 0

    print(f"\n{'='*60}")
    print("Validating Example Claims")
    print('='*60)

    valid_count = 0
    invalid_count = 0

    for example_file in example_files:
        print(f"\n📄 {example_file.name}")
        try:
            with open(example_file, "r", encoding="utf-8") as f:
                claim_input = ClaimInput.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            print(f"  ✗ Unreadable: {e}")
            invalid_count += 1
            continue

        violations = claim_input.violations()
        if violations:
            print("  ✗ Invalid")
            for violation in violations:
                print(f"    - {violation}")
            invalid_count += 1
            continue

        print("  ✓ Valid")
        print(f"    Employee: {claim_input.employee_id}")
        print(f"    Amount:   {claim_input.amount} ({claim_input.category})")
        print(f"    Receipts: {len(claim_input.attachments)}")
        valid_count += 1

    print(f"\n{'='*60}")
    print(f"Results: {valid_count} valid, {invalid_count} invalid")
    print('='*60)
    return valid_count, invalid_count


def main():
    """Main entry point."""
    print("="*60)
    print("Expense Claim - JSON Schema Export")
    print("="*60)

    export_json_schema()
    validate_example_claims()


if __name__ == "__main__":
    main()
