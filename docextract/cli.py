"""Command-line interface for parsing OCR output and batch analysis.

``parse`` runs one parser over a saved OCR JSON payload. ``batch`` walks
a folder of uploads, each with a ``<file>.ocr.json`` sidecar holding its
recognition output, pushes them through the deduplicating orchestrator
and writes one CSV row per file.
"""

import argparse
import csv
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any

from docextract.dedup.orchestrator import AnalysisOrchestrator, AnalysisRequest
from docextract.errors import (
    AnalysisInProgress,
    BillingContextError,
    OCRBackendError,
    UnsupportedUpload,
)
from docextract.ocr.backend import PrecomputedBackend
from docextract.routing.router import SUPPORTED_DOCUMENT_TYPES, ExtractionRouter
from docextract.utils.config import load_config
from docextract.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

SIDECAR_SUFFIX = ".ocr.json"
_DOCUMENT_TYPES = [*SUPPORTED_DOCUMENT_TYPES, "auto"]
_COLUMNS = [
    "filename",
    "status",
    "analysis_id",
    "cached",
    "document_type",
    "error",
]
_SUMMARY_FIELDS = {
    "receipt": ("businessName", "invoiceNo", "invoiceDate", "subtotal", "tax", "total"),
    "invoice": ("businessName", "invoiceNo", "invoiceDate", "subtotal", "tax", "total"),
    "utility": ("manufacturer", "serialNumber", "standard", "mainReading"),
    "generic": ("customerName", "mobileNumber", "statementDate"),
    "customer": ("customerName", "mobileNumber", "statementDate"),
    "inventory": ("customerName", "mobileNumber", "statementDate"),
}


def _load_json(path: Path) -> Any:
    with open(path) as f:
        return json.load(f)


def parse_file(
    payload_path: Path, document_type: str, config_path: Path | None = None
) -> dict[str, Any]:
    """Parse one saved OCR payload.

    Args:
        payload_path: JSON file holding pages or a layout result.
        document_type: Parser to use, or ``auto``.
        config_path: Optional YAML config.

    Returns:
        Dictionary with the resolved type and the extracted document.
    """
    router = ExtractionRouter(load_config(config_path))
    payload = _load_json(payload_path)
    resolved = router.resolve_type(document_type, payload)
    document = router.parse(resolved, payload)
    return {
        "filename": payload_path.name,
        "documentType": resolved,
        "data": document.to_dict(),
    }


def _find_uploads(input_dir: Path) -> list[Path]:
    """Files in ``input_dir`` that have an OCR sidecar next to them."""
    return sorted(
        path
        for path in input_dir.iterdir()
        if path.is_file()
        and not path.name.endswith(SIDECAR_SUFFIX)
        and path.with_name(path.name + SIDECAR_SUFFIX).exists()
    )


def _summary_row(result: dict[str, Any]) -> dict[str, Any]:
    row = {
        "analysis_id": result["analysisId"],
        "cached": result["cached"],
        "document_type": result["documentType"],
    }
    data = result["extractedData"]
    for key in _SUMMARY_FIELDS.get(result["documentType"], ()):
        row[key] = data.get(key)
    if "customers" in data:
        row["customers"] = len(data["customers"])
    return row


def process_folder(
    input_dir: Path,
    output_csv: Path,
    document_type: str = "auto",
    seller_id: str = "cli",
    config_path: Path | None = None,
    verbose: bool = False,
) -> dict[str, int]:
    """Analyze every upload in a folder and export the results to CSV.

    Identical files are analyzed once; later copies are reported as cached.

    Returns:
        Summary dict with total, successful, failed and cached counts.
    """
    config = load_config(config_path)
    backend = PrecomputedBackend()
    orchestrator = AnalysisOrchestrator(backend, config=config)

    files = _find_uploads(input_dir)
    if not files:
        logger.warning("No uploads with %s sidecars found in %s", SIDECAR_SUFFIX, input_dir)
        return {"total": 0, "successful": 0, "failed": 0, "cached": 0}

    logger.info("Found %d uploads to analyze", len(files))
    rows: list[dict[str, Any]] = []
    counts = {"total": len(files), "successful": 0, "failed": 0, "cached": 0}

    for i, path in enumerate(files, 1):
        if verbose:
            print(f"Analyzing [{i}/{len(files)}]: {path.name}")
        content = path.read_bytes()
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        try:
            backend.add(content, _load_json(path.with_name(path.name + SIDECAR_SUFFIX)))
            result = orchestrator.analyze(
                AnalysisRequest(
                    content=content,
                    mime_type=mime_type,
                    document_type=document_type,
                    uploader_id=seller_id,
                    uploader_role="seller",
                )
            )
        except (
            UnsupportedUpload,
            BillingContextError,
            OCRBackendError,
            AnalysisInProgress,
            json.JSONDecodeError,
        ) as exc:
            logger.error("Failed to analyze %s: %s", path.name, exc)
            rows.append({"filename": path.name, "status": "failed", "error": str(exc)})
            counts["failed"] += 1
            continue

        row = {"filename": path.name, "status": "success", "error": None}
        row.update(_summary_row(result.to_dict()))
        rows.append(row)
        counts["successful"] += 1
        counts["cached"] += int(result.cached)

    _write_csv(rows, output_csv)
    logger.info("Results written to %s", output_csv)
    _print_summary(counts, output_csv)
    return counts


def _write_csv(rows: list[dict[str, Any]], output_path: Path) -> None:
    if not rows:
        return
    all_keys: set[str] = set()
    for row in rows:
        all_keys.update(row.keys())
    columns = [c for c in _COLUMNS if c in all_keys] + sorted(all_keys - set(_COLUMNS))

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def _print_summary(summary: dict[str, int], output_csv: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Batch Analysis Complete")
    print(f"{'=' * 50}")
    print(f"Total:      {summary['total']}")
    print(f"Successful: {summary['successful']}")
    print(f"Cached:     {summary['cached']}")
    print(f"Failed:     {summary['failed']}")
    print(f"Output:     {output_csv}")


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Document extraction tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", type=Path, help="YAML config file")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parse_parser = subparsers.add_parser("parse", help="Parse one saved OCR payload")
    parse_parser.add_argument("file", type=Path, help="OCR JSON payload")
    parse_parser.add_argument(
        "-t",
        "--type",
        choices=_DOCUMENT_TYPES,
        default="auto",
        dest="doc_type",
        help="Document type (default: auto)",
    )
    parse_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")

    batch_parser = subparsers.add_parser(
        "batch", help=f"Analyze a folder of uploads with {SIDECAR_SUFFIX} sidecars"
    )
    batch_parser.add_argument("input_dir", type=Path, help="Input directory")
    batch_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )
    batch_parser.add_argument(
        "-t",
        "--type",
        choices=_DOCUMENT_TYPES,
        default="auto",
        dest="doc_type",
        help="Document type (default: auto)",
    )
    batch_parser.add_argument(
        "--seller", default="cli", help="Seller id the uploads are billed to"
    )
    batch_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )

    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.log_level)

    if args.command == "parse":
        if not args.file.exists():
            print(f"Error: {args.file} does not exist", file=sys.stderr)
            sys.exit(1)
        result = parse_file(args.file, args.doc_type, args.config)
        output_str = json.dumps(result, indent=2, ensure_ascii=False)
        if args.output:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(output_str)
            print(f"Output written to {args.output}")
        else:
            print(output_str)
    elif args.command == "batch":
        if not args.input_dir.is_dir():
            print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
            sys.exit(1)
        process_folder(
            args.input_dir,
            args.output,
            args.doc_type,
            args.seller,
            args.config,
            args.verbose,
        )
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
