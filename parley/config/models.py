"""
Configuration dataclass models for Parley.
"""
from dataclasses import dataclass, field
from typing import Dict, List


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""
    broker: str = "localhost"
    port: int = 1883
    username: str = "parley"
    password: str = ""  # loaded from env
    client_prefix: str = "parley"
    reconnect_initial: float = 1.0
    reconnect_max: float = 60.0


@dataclass
class OllamaConfig:
    """Text-generation service configuration."""
    host: str = "http://localhost:11434"
    model: str = "llama3.2:3b"
    timeout: float = 10.0
    default_max_tokens: int = 150
    default_temperature: float = 0.9


@dataclass
class CaptureConfig:
    """Speech recognition configuration."""
    lang: str = "en-US"
    continuous: bool = True
    interim_results: bool = True
    confidence_threshold: float = 0.3
    silence_timeout: float = 2.0
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 8.0
    retry_backoff: float = 2.0


@dataclass
class VoiceProfileConfig:
    """Neutral voice settings for one persona."""
    voice: str = ""
    lang: str = "en-US"
    rate: float = 0.9
    pitch: float = 1.0
    volume: float = 1.0


@dataclass
class SynthesisConfig:
    """Speech synthesis configuration."""
    default_voice: str = ""
    lang: str = "en-US"
    rate: float = 0.9
    pitch: float = 1.0
    volume: float = 1.0


@dataclass
class PersonaConfig:
    """Character identity used for prompts and voice selection."""
    name: str = "Assistant"
    role: str = ""
    description: str = "A helpful and engaging conversational partner"
    speaking_style: str = "Friendly and natural"
    traits: List[str] = field(default_factory=lambda: ["helpful", "curious", "empathetic"])
    voice: str = ""


@dataclass
class ConversationConfig:
    """Turn-taking and prompt construction configuration."""
    min_transcript_chars: int = 2
    history_window: int = 10
    max_history: int = 50
    context_memory_size: int = 20
    fallback_text: str = "I'm having trouble connecting right now. Could you try that again?"
    fallback_emotion: str = "apologetic"
    fallback_confidence: float = 0.5
    generated_confidence: float = 0.9


@dataclass
class CacheConfig:
    """Response cache configuration."""
    ttl: float = 300.0  # 5 minutes
    capacity: int = 100


@dataclass
class HostConfig:
    """Session host service configuration."""
    bind: str = "0.0.0.0"
    port: int = 8010
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    session_api_url: str = ""  # empty keeps sessions in memory
    session_api_timeout: float = 10.0


@dataclass
class ParleyConfig:
    """Root configuration object containing all subsystem configs."""
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    host: HostConfig = field(default_factory=HostConfig)
    personas: Dict[str, PersonaConfig] = field(default_factory=dict)
    voices: Dict[str, VoiceProfileConfig] = field(default_factory=dict)
