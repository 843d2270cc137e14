#!/usr/bin/env python3
"""
Script to extract receipt data from images using the extraction workflow and Gemini API.

Runs every receipt image in the uploads folder through the same
validate -> extract -> reconcile flow the API uses, prints the result and
saves it next to the image as JSON for inspection.
"""

import json
import os
import sys
import traceback
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from receiptwise.graph.nodes.extraction import (
    ExtractionError,
    InputInvalidError,
    image_path_to_data_url,
)
from receiptwise.graph.workflow import run_extraction

IMAGE_PATTERNS = ("*.jpg", "*.jpeg", "*.png", "*.webp", "*.heic")


def main():
    uploads_dir = Path(__file__).parent / "uploads"

    receipt_files = sorted(p for pattern in IMAGE_PATTERNS for p in uploads_dir.glob(pattern))
    if not receipt_files:
        print("No receipt images found in uploads folder!")
        return

    for receipt_path in receipt_files:
        print(f"\n🧾 Processing receipt: {receipt_path.name}")
        print("=" * 50)

        try:
            data = run_extraction(image_path_to_data_url(str(receipt_path)))
        except InputInvalidError as e:
            print(f"⚠️  Skipping {receipt_path.name}: {e}")
            continue
        except ExtractionError as e:
            print(f"❌ Error processing {receipt_path.name}: {e}")
            traceback.print_exc()
            continue

        print(f"Merchant:    {data.merchant}")
        print(f"Amount:      ${data.amount}")
        print(f"Date:        {data.date.isoformat()}")
        print(f"Category:    {data.category.value}")
        print(f"Description: {data.description}")
        if data.is_business_expense:
            print(f"Business:    yes ({data.tax_category.value})")
        else:
            print("Business:    no")

        if data.items:
            print("\n📋 LINE ITEMS:")
            print("-" * 30)
            for i, item in enumerate(data.items, 1):
                print(f"{i:2d}. {item.name:30s} ${item.price}")

        output_file = receipt_path.with_suffix(".json")
        with open(output_file, "w") as f:
            json.dump(data.model_dump(mode="json", exclude_none=True), f, indent=2)
        print(f"\n📄 JSON saved to: {output_file}")


if __name__ == "__main__":
    if not os.getenv("GOOGLE_API_KEY"):
        print("❌ Error: GOOGLE_API_KEY not found in environment!")
        print("Please set your Google API key in the .env file")
        sys.exit(1)

    main()
