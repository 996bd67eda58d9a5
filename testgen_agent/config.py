"""
Agent Configuration
===================
Centralized configuration management with validation.
"""

import os
from typing import Optional, Literal
from pydantic import BaseModel, Field, field_validator, ConfigDict
from dotenv import load_dotenv

load_dotenv()


class LLMConfig(BaseModel):
    """Configuration for LLM providers."""

    # environment values arrive through default factories
    model_config = ConfigDict(validate_default=True)

    provider: Literal["gemini", "deepseek"] = Field(
        default_factory=lambda: os.getenv("TESTGEN_PROVIDER", "gemini")
    )

    gemini_model: str = Field(
        default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    )
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    deepseek_model: str = Field(
        default_factory=lambda: os.getenv("DEEPSEEK_MODEL", "deepseek-chat")
    )
    deepseek_base_url: str = "https://api.deepseek.com"

    temperature: float = 0.1
    max_output_tokens: int = 8000
    top_p: float = 0.8
    top_k: int = 40

    connect_timeout: float = 20.0
    write_timeout: float = 120.0
    read_timeout: float = 180.0

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v):
        if not 0.0 <= v <= 2.0:
            raise ValueError("temperature must be within [0, 2]")
        return v


class RunnerConfig(BaseModel):
    """Configuration for the Gradle build/test runner."""
    timeout_seconds: int = 600
    build_descriptors: list[str] = [
        "build.gradle.kts",
        "build.gradle",
        "settings.gradle.kts",
        "settings.gradle",
        "pom.xml",
        "gradlew",
    ]
    gradle_command: str = "gradle"
    compile_mode: Literal["structural", "gradle"] = "structural"
    compile_task: str = "compileTestKotlin"
    no_tests_marker: str = "No tests found"


class LoopConfig(BaseModel):
    """Configuration for the generate/repair loop."""

    model_config = ConfigDict(validate_default=True)

    max_iterations: int = Field(
        default_factory=lambda: os.getenv("TESTGEN_MAX_ITERATIONS") or 5
    )
    language_tags: list[str] = ["kotlin", "kt"]
    default_package: str = "com.example"
    max_diagnostics_chars: int = 12000

    @field_validator("max_iterations")
    @classmethod
    def validate_max_iterations(cls, v):
        if v < 1:
            raise ValueError("max_iterations must be at least 1")
        return v


class ObservabilityConfig(BaseModel):
    """Configuration for logging."""

    model_config = ConfigDict(validate_default=True)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default_factory=lambda: os.getenv("TESTGEN_LOG_LEVEL", "INFO")
    )
    log_format: Literal["json", "text"] = "text"
    logs_dir: str = "logs"
    log_file_enabled: bool = False


class AgentConfig(BaseModel):
    """Complete agent configuration."""

    model_config = ConfigDict(validate_default=True)

    gemini_api_key: Optional[str] = Field(default_factory=lambda: os.getenv("GEMINI_API_KEY"))
    deepseek_api_key: Optional[str] = Field(default_factory=lambda: os.getenv("DEEPSEEK_API_KEY"))

    llm: LLMConfig = Field(default_factory=LLMConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


# Singleton
_config: Optional[AgentConfig] = None


def get_config() -> AgentConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AgentConfig()
    return _config


def reload_config() -> AgentConfig:
    """Reload configuration from environment."""
    global _config
    load_dotenv(override=True)
    _config = AgentConfig()
    return _config
