"""Coach client - Entry point for streaming live audio to the coaching model."""

import argparse
import asyncio
import signal
from pathlib import Path

from coach_client.config.settings import create_example_env_file, load_config, setup_logging
from coach_client.core.errors import CoachClientError


async def run(config_path: Path) -> None:
    from coach_client.core.coach import Coach, CoachEvent

    config = load_config(config_path)
    setup_logging(config.log_level)

    coach = Coach(config)
    coach.events.subscribe(CoachEvent.MESSAGE, lambda m: print(f"Coach: {m.text}", flush=True))
    coach.events.subscribe(CoachEvent.INTERRUPTED, lambda _: print("[interrupted]", flush=True))
    coach.events.subscribe(CoachEvent.SESSION_STATUS, lambda s: print(f"[session] {s.value}", flush=True))
    coach.events.subscribe(CoachEvent.AUDIO_STATUS, lambda s: print(f"[audio] {s.value}", flush=True))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    except NotImplementedError:
        # Windows: fall back to KeyboardInterrupt
        pass

    try:
        await coach.start()
        print("Listening... press Ctrl-C to stop.")
        await stop_event.wait()
    finally:
        await coach.stop()


def main():
    parser = argparse.ArgumentParser(description="Live audio coaching client")
    parser.add_argument("--config", type=str, help="Path to config file", default=".env")
    parser.add_argument("--create-config", action="store_true", help="Create example config file")
    parser.add_argument("--list-devices", action="store_true", help="List audio input devices")

    args = parser.parse_args()

    if args.create_config:
        create_example_env_file()
        print("Example configuration file created at .env.example")
        print("Please copy it to .env and fill in your API key.")
        return

    if args.list_devices:
        from coach_client.audio.input.mic import list_input_devices
        for device in list_input_devices():
            print(f"  [{device['index']}] {device['name']} ({device['channels']} ch, {device['default_samplerate']} Hz)")
        return

    try:
        asyncio.run(run(Path(args.config)))
    except ValueError as e:
        print(f"Configuration error: {e}")
        print("Run with --create-config to create an example configuration file.")
    except CoachClientError as e:
        print(f"Error: {e}")
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
