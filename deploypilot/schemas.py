"""Pydantic schemas for inbound deployment payloads."""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from deploypilot.core.exceptions import ValidationError
from deploypilot.core.models import ENV_NAME_PATTERN, REPO_PATTERN, DeploymentRequest

FQDN_PATTERN = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}\.?$"
)


class MethodEnum(str, Enum):
    """Deployment methods."""
    deploy = "deploy"
    cleanup = "cleanup"


class EnvironmentEnum(str, Enum):
    """Deployment environments."""
    snapshot = "snapshot"
    dev = "dev"
    stage = "stage"
    production = "production"


class SourceSchema(BaseModel):
    """Source code information."""
    title: str = Field("", description="Human-readable deployment title")
    repo: str = Field(..., description="Repository as owner/name")
    branch: str = Field("", description="Branch to deploy")
    commit: str = Field("", description="Commit to deploy")
    pr_number: Optional[str] = Field(None, description="Pull request number")
    pr_title: Optional[str] = Field(None, description="Pull request title")
    pr_type: Optional[str] = Field(None, description="Pull request type")
    pr_purpose: Optional[str] = Field(None, description="Pull request purpose")

    @field_validator("pr_number", mode="before")
    @classmethod
    def coerce_pr_number(cls, v):
        if v is None:
            return v
        return str(v)

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, v):
        if not REPO_PATTERN.match(v) or ".." in v:
            raise ValueError("repo must look like 'owner/name'")
        return v


class MetadataSchema(BaseModel):
    """Deployment metadata."""
    project_name: str = Field(..., min_length=1, description="Project name")
    component: str = Field(..., min_length=1, description="Component name")
    environment: EnvironmentEnum = Field(..., description="Target environment")


class SecretMappingSchema(BaseModel):
    """A single secret mapping."""
    path: str = Field(..., min_length=1, description="Folder path in the secret store")
    secret_name: str = Field(..., min_length=1, description="Secret key in the secret store")
    env_name: str = Field(..., description="Environment variable name on the target")

    @field_validator("env_name")
    @classmethod
    def validate_env_name(cls, v):
        if not ENV_NAME_PATTERN.match(v):
            raise ValueError(f"'{v}' is not a valid environment variable name")
        return v


class InjectSecretSchema(BaseModel):
    """Secret injection configuration."""
    enable: bool = False
    project: str = ""
    environment: str = ""
    secrets: List[SecretMappingSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_required_when_enabled(self):
        if not self.enable:
            return self
        if not self.project:
            raise ValueError("project is required when inject_secret.enable is true")
        if not self.environment:
            raise ValueError("environment is required when inject_secret.enable is true")
        if not self.secrets:
            raise ValueError("secrets array is required when inject_secret.enable is true")

        names = [s.env_name for s in self.secrets]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate env_name in secrets: {', '.join(duplicates)}")
        return self


class SetupSchema(BaseModel):
    inject_secret: InjectSecretSchema = Field(default_factory=InjectSecretSchema)


class DomainSchema(BaseModel):
    """DNS domain configuration."""
    enable: bool = False
    title: str = ""
    name: str = ""
    value: str = ""

    @field_validator("name")
    @classmethod
    def validate_fqdn(cls, v):
        if v and not FQDN_PATTERN.match(v):
            raise ValueError(f"'{v}' is not a fully qualified domain name")
        return v


class NotifyDiscordSchema(BaseModel):
    enable: bool = False
    channel: str = ""


class PostSchema(BaseModel):
    """Post-deployment actions."""
    setup_domain: DomainSchema = Field(default_factory=DomainSchema)
    cleanup_domain: DomainSchema = Field(default_factory=DomainSchema)
    notify_discord: NotifyDiscordSchema = Field(default_factory=NotifyDiscordSchema)

    @model_validator(mode="after")
    def check_domains(self):
        setup = self.setup_domain
        if setup.enable:
            for attr in ("title", "name", "value"):
                if not getattr(setup, attr):
                    raise ValueError(f"{attr} is required when setup_domain.enable is true")
        if self.cleanup_domain.enable and not self.cleanup_domain.name:
            raise ValueError("name is required when cleanup_domain.enable is true")
        return self


class DeployRequestPayload(BaseModel):
    """Request schema for triggering a deployment or cleanup."""
    source: SourceSchema = Field(..., description="Source code information")
    method: MethodEnum = Field(..., description="deploy or cleanup")
    metadata: MetadataSchema = Field(..., description="Deployment metadata")
    setup: SetupSchema = Field(default_factory=SetupSchema)
    post: PostSchema = Field(default_factory=PostSchema)
    trace_id: str = Field("", description="Caller-supplied trace ID")

    @model_validator(mode="after")
    def check_source_for_deploy(self):
        if self.method == MethodEnum.deploy:
            if not self.source.branch:
                raise ValueError("source.branch is required for deploy")
            if not self.source.commit:
                raise ValueError("source.commit is required for deploy")
        return self

    def to_request(self) -> DeploymentRequest:
        """Convert to the immutable domain request."""
        return DeploymentRequest.from_dict(self.model_dump(mode="json", exclude_none=True))


def parse_payload(data: Dict[str, Any]) -> DeploymentRequest:
    """
    Validate a raw payload and convert it to a DeploymentRequest.

    Raises:
        ValidationError: With one line per schema error in ``details``
    """
    if not isinstance(data, dict):
        raise ValidationError("Request payload must be a JSON object")

    try:
        payload = DeployRequestPayload.model_validate(data)
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid request payload: {errors[0]}",
            details={"errors": errors},
        )

    request = payload.to_request()
    request.validate()
    return request
