"""Application settings.

All configuration is sourced from environment variables (and optionally `.env`).
"""

from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from markflow.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Typed environment-backed settings for markflow."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    # AWS account
    region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("MARKFLOW_REGION", "AWS_REGION", "AWS_DEFAULT_REGION"),
    )
    account_id: str | None = Field(default=None, alias="MARKFLOW_ACCOUNT_ID")

    # Buckets
    pdf_source_bucket: str | None = Field(
        default=None, validation_alias=AliasChoices("PDF_SOURCE_BUCKET", "PdfSourceBucket")
    )
    pdf_destination_bucket: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PDF_DESTINATION_BUCKET", "PdfDestinationBucket"),
    )

    # Compute steps
    pdf_to_images_function: str = Field(default="pdf-to-images", alias="PDF_TO_IMAGES_FUNCTION")
    analyze_document_images_function: str = Field(
        default="analyze-document-images", alias="ANALYZE_DOCUMENT_IMAGES_FUNCTION"
    )
    correct_image_orientation_function: str = Field(
        default="correct-image-orientation", alias="CORRECT_IMAGE_ORIENTATION_FUNCTION"
    )
    images_to_pdf_function: str = Field(default="images-to-pdf", alias="IMAGES_TO_PDF_FUNCTION")
    transform_form_result_function: str = Field(
        default="transform-form-result", alias="TRANSFORM_FORM_RESULT_FUNCTION"
    )
    generate_mark_result_function: str = Field(
        default="generate-mark-result", alias="GENERATE_MARK_RESULT_FUNCTION"
    )

    # State machines
    name_prefix: str = Field(default="", alias="MARKFLOW_NAME_PREFIX")
    state_machine_role_arn: str | None = Field(default=None, alias="STATE_MACHINE_ROLE_ARN")
    state_machine_timeout_minutes: int = Field(default=180, gt=0, alias="STATE_MACHINE_TIMEOUT_MINUTES")
    textract_poll_interval_seconds: int = Field(default=60, gt=0, alias="TEXTRACT_POLL_INTERVAL_SECONDS")
    rotation_settle_seconds: int = Field(default=5, ge=0, alias="ROTATION_SETTLE_SECONDS")

    # Notifications
    approval_topic_arn: str | None = Field(default=None, alias="APPROVAL_TOPIC_ARN")
    textract_notification_topic_arn: str | None = Field(
        default=None, alias="TEXTRACT_NOTIFICATION_TOPIC_ARN"
    )
    textract_notification_role_arn: str | None = Field(
        default=None, alias="TEXTRACT_NOTIFICATION_ROLE_ARN"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="MARKFLOW_LOG_LEVEL")
    json_logs: bool = Field(default=False, alias="MARKFLOW_JSON_LOGS")

    @property
    def timeout_seconds(self) -> int:
        return self.state_machine_timeout_minutes * 60

    @property
    def textract_notifications_enabled(self) -> bool:
        return bool(self.textract_notification_topic_arn and self.textract_notification_role_arn)

    def require(self, *names: str) -> None:
        """Raise ConfigurationError unless every named setting has a value."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                f"Missing required settings: {', '.join(missing)}",
                context={"missing": missing},
            )

    def machine_name(self, base: str) -> str:
        return f"{self.name_prefix}{base}"

    def state_machine_arn(self, base: str) -> str:
        """ARN a deployed machine will have, for nested execution parameters."""
        account = self.account_id or "000000000000"
        return f"arn:aws:states:{self.region}:{account}:stateMachine:{self.machine_name(base)}"
