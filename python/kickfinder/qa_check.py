import argparse
import asyncio
import csv
import json
import logging
import time

from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import ScrapeError
from kickfinder.service import PriceService
from kickfinder.sources.registry import SKU_SOURCE_IDS

logger = logging.getLogger(__name__)


async def check_source(service: PriceService, source_id: str, sku: str, token: CancellationToken):
    started = time.perf_counter()
    try:
        result = await service.price_by_source(source_id, sku, token)
        status = "ok" if result else "not_found"
    except ScrapeError as exc:
        result = None
        status = f"{exc.kind}: {exc}"
    except Exception as exc:
        logger.exception("%s check failed", source_id)
        result = None
        status = f"error: {exc.__class__.__name__}: {exc}"
    return {
        "source_id": source_id,
        "status": status,
        "count": len(result.sizes) if result else 0,
        "lowest_price": result.lowest_price if result else 0,
        "product_url": result.product_url if result else "",
        "elapsed_seconds": round(time.perf_counter() - started, 2),
    }


async def run_checks(sku: str, timeout: float):
    service = PriceService.from_settings(Settings.from_env())
    token = CancellationToken.create(timeout=timeout)
    started = time.perf_counter()
    try:
        results = []
        for source_id in SKU_SOURCE_IDS:
            results.append(await check_source(service, source_id, sku, token))
    finally:
        await service.close()
    return results, time.perf_counter() - started


def write_outputs(results, elapsed, json_path: str, csv_path: str):
    payload = {
        "elapsed_seconds": round(elapsed, 2),
        "sources": results,
    }
    with open(json_path, "w", encoding="utf-8") as json_handle:
        json.dump(payload, json_handle, indent=2)
    with open(csv_path, "w", newline="", encoding="utf-8") as csv_handle:
        writer = csv.writer(csv_handle)
        writer.writerow(["source_id", "status", "count", "lowest_price", "product_url"])
        for row in sorted(results, key=lambda item: (item["count"], item["source_id"])):
            writer.writerow([row["source_id"], row["status"], row["count"], row["lowest_price"], row["product_url"]])


def main():
    parser = argparse.ArgumentParser(description="QA check for per-source price scraping.")
    parser.add_argument("--sku", required=True, help="Style id to look up, e.g. DZ5485-612")
    parser.add_argument("--timeout", type=float, default=600.0, help="Overall deadline in seconds")
    parser.add_argument("--json", default="qa_report.json", help="Output JSON path")
    parser.add_argument("--csv", default="qa_report.csv", help="Output CSV path")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    results, elapsed = asyncio.run(run_checks(args.sku, args.timeout))
    write_outputs(results, elapsed, args.json, args.csv)
    empty = [row for row in results if row["count"] == 0]
    print(f"[qa] {len(results)} sources checked in {elapsed:.2f}s")
    print(f"[qa] {len(empty)} sources returned 0 sizes")
    for row in sorted(empty, key=lambda item: item["source_id"]):
        print(f" - {row['source_id']} ({row['status']})")


if __name__ == "__main__":
    main()
