"""
Controller wiring from environment configuration.

The host application calls build_controller() once and keeps the returned
controller (there is exactly one capture per process).
"""

from __future__ import annotations

from typing import Optional

from capture_pipeline.audio import AudioDevice, SoundDeviceAudioDevice
from capture_pipeline.config import PipelineConfig, get_config as get_pipeline_config
from capture_pipeline.extraction import EntityExtractor, GroqEntityExtractor
from capture_pipeline.groq_client import GroqClient
from capture_pipeline.rule_extractor import RuleBasedExtractor
from capture_pipeline.transcription import GroqTranscriber, TranscriptionCapability
from logging_setup import get_logger, Component
from .config import ControlConfig, get_config as get_control_config
from .contact_store import ContactStore, HttpContactStore, InMemoryContactStore
from .controller import CaptureController

logger = get_logger(Component.CAPTURE_CONTROL)


def build_contact_store(config: ControlConfig) -> ContactStore:
    if config.contact_store_url:
        return HttpContactStore(config.contact_store_url, config.contact_store_timeout_seconds)
    logger.info("CONTACT_STORE_URL not set; leads are kept in memory")
    return InMemoryContactStore()


def build_extractor(config: PipelineConfig, client: Optional[GroqClient] = None) -> EntityExtractor:
    if config.extraction_backend == "groq":
        return GroqEntityExtractor(client or GroqClient(config), timeout=config.extraction_timeout_seconds)
    return RuleBasedExtractor()


def build_controller(
    pipeline_config: Optional[PipelineConfig] = None,
    control_config: Optional[ControlConfig] = None,
    *,
    device: Optional[AudioDevice] = None,
    transcriber: Optional[TranscriptionCapability] = None,
    extractor: Optional[EntityExtractor] = None,
    contact_store: Optional[ContactStore] = None,
) -> CaptureController:
    """
    Controller with the default capabilities: local microphone, Groq Whisper
    transcription, rule-based or Groq extraction. Any capability can be
    passed in instead. Configs default to the process-wide environment ones.

    The default transcriber needs GROQ_API_KEY even when extraction runs on
    the local rules.
    """
    pipeline_config = pipeline_config or get_pipeline_config()
    control_config = control_config or get_control_config()

    if transcriber is None and not pipeline_config.groq_api_key:
        raise ValueError(
            "GROQ_API_KEY is required for the default Groq Whisper transcriber; "
            "set it or pass a transcriber"
        )

    client: Optional[GroqClient] = None
    if transcriber is None or (extractor is None and pipeline_config.extraction_backend == "groq"):
        client = GroqClient(pipeline_config)

    if transcriber is None:
        transcriber = GroqTranscriber(
            client,
            sample_rate=pipeline_config.sample_rate,
            partial_interval=pipeline_config.transcription_partial_interval_seconds,
            request_timeout=pipeline_config.transcription_timeout_seconds,
        )

    controller = CaptureController(
        device or SoundDeviceAudioDevice(pipeline_config.audio_device, pipeline_config.audio_blocksize),
        transcriber,
        extractor or build_extractor(pipeline_config, client),
        contact_store or build_contact_store(control_config),
        pipeline_config=pipeline_config,
        control_config=control_config,
    )
    logger.info(
        "Capture controller ready",
        language=pipeline_config.language,
        extraction_backend=pipeline_config.extraction_backend,
        contact_store=type(controller.committer.store).__name__,
    )
    return controller
