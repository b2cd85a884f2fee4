import argparse
import json
import logging
import signal
import threading

from livediar.backends import create_backend
from livediar.config import DiarizerConfig
from livediar.errors import StopCause
from livediar.infrastructure.events import EventType
from livediar.services.sounddevice_input import SoundDeviceInput
from livediar.services.speaker_store import SpeakerStore
from livediar.session import DiarizationSession

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
)
logger = logging.getLogger("LiveDiar")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Live microphone speaker diarization")
    parser.add_argument("--backend", default="nemo", choices=["nemo", "tone"])
    parser.add_argument("--device", default=None, help="sounddevice input device index or name")
    parser.add_argument("--speakers", default=None, help="speaker profile JSON to load and update")
    parser.add_argument("--env-file", default=None, help=".env file with LIVEDIAR_* overrides")
    parser.add_argument("--output", default=None, help="write the final result as JSON here")
    args = parser.parse_args(argv)

    cfg = DiarizerConfig.from_env(env_file=args.env_file)
    device = args.device
    if device is not None and device.isdigit():
        device = int(device)

    session = DiarizationSession(create_backend(args.backend), cfg, device=SoundDeviceInput(device))
    store = SpeakerStore(args.speakers) if args.speakers else None
    if store:
        store.load_into(session.registry)

    stopped = threading.Event()

    def on_event(event):
        if event.type is EventType.LIVE_RESULT:
            for seg in event.get("result").segments:
                print(f"[live] {seg.start_time:7.2f}-{seg.end_time:7.2f}  {seg.speaker_id}")
        elif event.type is EventType.SESSION_STOPPED:
            stopped.set()
        else:
            logger.info(f"{event.type.value}: {event.payload}")

    session.bus.add_listener(on_event)
    signal.signal(signal.SIGINT, lambda *_: stopped.set())

    session.start()
    print("\n=== LISTENING (Ctrl+C to finish) ===\n")
    stopped.wait()

    session.stop(session.stop_cause or StopCause.USER)
    result = session.finish_session()
    for seg in result.segments:
        print(f"[final] {seg.start_time:7.2f}-{seg.end_time:7.2f}  {seg.speaker_id}")

    if args.output:
        with open(args.output, "w") as f:
            json.dump(result.to_dict(), f, indent=2)
    if store:
        store.save_from(session.registry, min_duration=cfg.min_speech_duration)
    session.close()


if __name__ == "__main__":
    main()
