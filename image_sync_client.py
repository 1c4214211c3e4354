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

import argparse
import asyncio
import logging
import os
from typing import Optional

from config import Config, ConfigurationLoadError
from logger import print, setup_logging
from messages import Role, SessionInfo, Transport
from metrics_export import metrics_table, save_metrics
from segment_client import SegmentUploader
from session_coordinator import SessionCoordinator
from session_protocol import ConnectError

IMAGE_DATASET = [f"https://picsum.photos/seed/img{i}/800/600" for i in range(1, 26)]


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="image-sync-client", description="Drive or follow an image sync session")
    parser.add_argument("role", choices=[role.value for role in Role])
    parser.add_argument("--user", required=True, help="identity to register as")
    parser.add_argument("--transport", choices=[t.value for t in Transport], default=Transport.RELAYED.value)
    parser.add_argument("--config", default=os.environ.get("IMAGE_SYNC_CONFIG", "./config.toml"))
    parser.add_argument("--client", help="evaluator: client to start the session with")
    parser.add_argument("--image", action="append", dest="images", help="evaluator: image url, repeatable")
    parser.add_argument("--interval", type=float, default=3.0, help="evaluator: seconds per image")
    parser.add_argument("--record", action="store_true", help="client: capture microphone audio per image")
    parser.add_argument("--metrics-out", help="write latency metrics on exit (.json or .csv)")
    args = parser.parse_args(argv)
    if args.role == Role.EVALUATOR.value and not args.client:
        parser.error("evaluator needs --client")
    return args


async def run_evaluator(coordinator: SessionCoordinator, client_id: str, images: list[str], interval: float):
    coordinator.on_session_change = lambda info: logging.info(
        f"Session {info.session_id} with {info.client_id}" if info else "Session ended")
    await coordinator.start_session(client_id, images)
    try:
        while True:
            print(f"[bold]showing {coordinator.current_index + 1}/{len(images)}[/bold] {images[coordinator.current_index]}")
            await asyncio.sleep(interval)
            if not await coordinator.next_image():
                break
    finally:
        await coordinator.end_session()


async def run_client(coordinator: SessionCoordinator):
    def on_session_change(info: Optional[SessionInfo]):
        if info is None:
            print("[yellow]session ended[/yellow]")
        else:
            print(f"[green]session {info.session_id} started by {info.evaluator_name or info.evaluator_id}[/green]")

    coordinator.on_session_change = on_session_change
    coordinator.on_display = lambda index, url: print(f"image {index}: {url}")
    logging.info("Waiting for sessions, Ctrl^C to quit")
    await asyncio.Event().wait()


async def main(args: argparse.Namespace):
    config = Config(args.config)
    try:
        await config.initialize()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return

    role = Role(args.role)
    recorder = None
    if args.record:
        # sounddevice is an optional extra, only needed when recording
        from audio_recorder import SoundDeviceRecorder
        recorder = SoundDeviceRecorder()
    segment_url = config["client"]["segment_url"]
    uploader = SegmentUploader(segment_url) if role == Role.CLIENT and segment_url else None

    coordinator = SessionCoordinator(config.values, args.user, role, recorder=recorder, uploader=uploader)
    try:
        await coordinator.use_transport(Transport(args.transport))
    except ConnectError as e:
        logging.error(f"{e}. Exiting")
        await coordinator.close()
        return

    try:
        if role == Role.EVALUATOR:
            await run_evaluator(coordinator, args.client, args.images or IMAGE_DATASET, args.interval)
        else:
            await run_client(coordinator)
    except asyncio.CancelledError:
        logging.info("Cancelled ...")
    finally:
        metrics = coordinator.latency_metrics()
        if metrics is not None:
            print(metrics_table(metrics, args.transport))
            if args.metrics_out:
                await save_metrics(args.metrics_out, metrics, args.transport)
                logging.info(f"Metrics written to {args.metrics_out}")
        await coordinator.close()


def run():
    args = parse_args()
    setup_logging()
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
