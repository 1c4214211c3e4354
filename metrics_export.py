"""
ImageSync
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import csv
import datetime
import io
import json
import math
from pathlib import Path

import aiofiles
from rich.table import Table

from latency import LatencyMetrics

CSV_HEADERS = [
    "package",
    "exportedAt",
    "lastLatencyMs",
    "avgLatencyMs",
    "minLatencyMs",
    "maxLatencyMs",
    "sampleCount",
    "reconnectionAttempts",
    "failedMessages",
    "successfulMessages",
]


def metrics_row(metrics: LatencyMetrics, package: str, exported_at: str = None) -> dict:
    """Flat export row. The +inf "no sample yet" minimum is exported as null."""
    return {
        "package": package,
        "exportedAt": exported_at or datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "lastLatencyMs": metrics.last_ms,
        "avgLatencyMs": metrics.avg_ms,
        "minLatencyMs": None if math.isinf(metrics.min_ms) else metrics.min_ms,
        "maxLatencyMs": metrics.max_ms,
        "sampleCount": metrics.sample_count,
        "reconnectionAttempts": metrics.reconnection_attempts,
        "failedMessages": metrics.failed_messages,
        "successfulMessages": metrics.successful_messages,
    }


def export_metrics_json(metrics: LatencyMetrics, package: str, exported_at: str = None) -> str:
    return json.dumps(metrics_row(metrics, package, exported_at), indent=2)


def export_metrics_csv(metrics: LatencyMetrics, package: str, exported_at: str = None) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_HEADERS, lineterminator="\n")
    writer.writeheader()
    writer.writerow(metrics_row(metrics, package, exported_at))
    return buffer.getvalue()


async def save_metrics(path: Path, metrics: LatencyMetrics, package: str):
    """Format follows the file suffix: .csv or anything else as JSON."""
    path = Path(path)
    text = export_metrics_csv(metrics, package) if path.suffix.lower() == ".csv" \
        else export_metrics_json(metrics, package)
    async with aiofiles.open(path, 'w') as metrics_file:
        await metrics_file.write(text)


def metrics_table(metrics: LatencyMetrics, package: str) -> Table:
    table = Table(title=f"Latency ({package})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")

    def ms(value: float) -> str:
        return "-" if math.isinf(value) or metrics.sample_count == 0 else f"{value:.1f} ms"

    table.add_row("Last", ms(metrics.last_ms))
    table.add_row("Average", ms(metrics.avg_ms))
    table.add_row("Min", ms(metrics.min_ms))
    table.add_row("Max", ms(metrics.max_ms))
    table.add_row("Samples", str(metrics.sample_count))
    table.add_row("Reconnections", str(metrics.reconnection_attempts))
    table.add_row("Successful", str(metrics.successful_messages))
    table.add_row("Failed", str(metrics.failed_messages))
    return table
