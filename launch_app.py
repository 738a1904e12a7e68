#!/usr/bin/env python3
"""Chohan launcher.

Watches a capture device for start/win/lose screens and drives Twitch
channel predictions.

Usage:
    python launch_app.py                      # Monitor with configs/default.yaml
    python launch_app.py --backend sim        # Monitor a simulated camera
    python launch_app.py --list-devices       # Probe capture devices
    python launch_app.py --login              # Link a Twitch account
    python launch_app.py --logout             # Revoke and forget the token
"""

from __future__ import annotations

import argparse
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from app.events.error_bus import ErrorEventBus
from app.events.event_bus import EventDispatcher
from app.events.event_types import (
    AuthStateChangedEvent,
    MatchScoresEvent,
    PredictionUpdatedEvent,
    StateChangedEvent,
)
from app.pipeline.matching_loop import MatchingLoop
from app.pipeline.state_machine import DetectionStateMachine
from app.services.orchestrator import MonitorSession, PredictionOrchestrator
from capture import FrameSource, OpenCVCamera, SimulatedCamera, enumerate_devices
from configs.settings import DEFAULT_CONFIG_PATH, AppConfig, load_config
from contracts import Roi, StateChange
from detect.triggers import TriggerConfig, TriggerSet
from exceptions import AuthConfigurationError, ConfigError
from integrations.twitch import (
    CredentialManager,
    FileTokenStore,
    PredictionClient,
    TwitchOAuthConfig,
)
from log_config.logger import get_logger, setup_file_logging
from record.history import JsonlHistorySink

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chohan: screen-triggered Twitch predictions.")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--backend", default=None, choices=("opencv", "sim"))
    parser.add_argument("--device", default=None, help="Capture device index")
    parser.add_argument("--always-voting", action="store_true", help="Skip the idle phase")
    parser.add_argument("--list-devices", action="store_true", help="List capture devices and exit")
    parser.add_argument("--login", action="store_true", help="Authorize with Twitch and exit")
    parser.add_argument("--logout", action="store_true", help="Revoke the stored Twitch token and exit")
    return parser.parse_args(argv)


@dataclass
class Components:
    session: MonitorSession
    credentials: CredentialManager
    dispatcher: EventDispatcher
    error_bus: ErrorEventBus


def build_triggers(config: AppConfig) -> TriggerSet:
    return TriggerSet.from_configs(
        {
            name: TriggerConfig(
                name=name,
                roi=Roi(*entry.roi),
                threshold=entry.threshold,
                template_path=entry.template_path,
            )
            for name, entry in config.triggers.items()
        }
    )


def build_components(config: AppConfig, backend: str) -> Components:
    """Construct and wire every component of a monitoring run."""
    error_bus = ErrorEventBus()
    dispatcher = EventDispatcher(coalesce=(MatchScoresEvent,), name="ui-dispatcher")

    capture_config = config.capture

    def camera_factory():
        if backend == "sim":
            return SimulatedCamera(fps=capture_config.target_fps)
        return OpenCVCamera(open_timeout_s=capture_config.open_timeout_s)

    frame_source = FrameSource(camera_factory, target_fps=capture_config.target_fps, error_bus=error_bus)

    state_machine = DetectionStateMachine(
        resolved_delay_seconds=config.state.resolved_delay_seconds,
        always_voting=config.state.always_voting,
    )

    def _forward_state(change: StateChange) -> None:
        dispatcher.publish(StateChangedEvent(change.state, change.previous, change.classification))

    state_machine.subscribe(_forward_state)

    matching_loop = MatchingLoop(
        frame_source,
        state_machine,
        build_triggers(config),
        period_s=config.matching.period_ms / 1000.0,
        dispatcher=dispatcher,
        error_bus=error_bus,
    )

    twitch = config.twitch
    credentials = CredentialManager(
        TwitchOAuthConfig(twitch.client_id, twitch.client_secret, twitch.redirect_uri),
        FileTokenStore(twitch.token_path),
        dispatcher=dispatcher,
    )
    orchestrator = PredictionOrchestrator(
        state_machine,
        credentials,
        PredictionClient(credentials),
        settings=config.prediction,
        history=JsonlHistorySink(config.history.path),
        confidence_source=lambda: matching_loop.last_confidence,
        dispatcher=dispatcher,
        error_bus=error_bus,
    )
    session = MonitorSession(frame_source, state_machine, matching_loop, orchestrator, dispatcher, error_bus)
    return Components(session=session, credentials=credentials, dispatcher=dispatcher, error_bus=error_bus)


def _log_events(dispatcher: EventDispatcher) -> None:
    dispatcher.subscribe(
        StateChangedEvent,
        lambda e: logger.info(f"State: {e.state.value} (from {e.previous.value}, {e.classification.value})"),
    )
    dispatcher.subscribe(
        PredictionUpdatedEvent,
        lambda e: logger.info(f"Prediction [{e.status.value}] {e.message}"),
    )
    dispatcher.subscribe(
        AuthStateChangedEvent,
        lambda e: logger.info(f"Twitch: {e.reason}"),
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = args.config or DEFAULT_CONFIG_PATH
    try:
        config = load_config(config_path)
    except ConfigError as e:
        logger.error(f"Cannot start: {e}")
        return 2

    if config.logging.file_logging:
        setup_file_logging(config.logging.log_dir, level=config.logging.level)

    if args.list_devices:
        devices = enumerate_devices()
        if not devices:
            print("No capture devices found.")
        for device in devices:
            print(f"[{device.index}] {device.name} ({device.width}x{device.height})")
        return 0

    components = build_components(config, backend=args.backend or config.capture.backend)
    credentials = components.credentials

    if args.logout:
        credentials.logout()
        return 0

    if args.login:
        try:
            result = credentials.authenticate_interactive(cancel_event=threading.Event())
        except AuthConfigurationError as e:
            logger.error(str(e))
            return 2
        print(result.reason)
        return 0 if result.authenticated else 1

    _log_events(components.dispatcher)
    components.dispatcher.start()
    credentials.initialize()

    session = components.session
    if args.always_voting:
        session.set_always_voting(True)

    device_id = args.device or config.capture.device_id
    stop_requested = threading.Event()
    try:
        session.start(device_id, config.capture.width, config.capture.height)
        logger.info("Monitoring; press Ctrl+C to stop")
        while not stop_requested.wait(0.5):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
