from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from libvirt_executor.errors import UsageFailure
from libvirt_executor.identity import JobContext


# sysexits.h EX_USAGE; kept outside the runner-provided codes.
USAGE_EXIT_CODE = 64


class ExecutorSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LIBVIRT_EXECUTOR_", extra="ignore", populate_by_name=True
    )

    # Provided by gitlab-runner for every custom executor stage.
    project_name: str | None = Field(
        default=None, validation_alias="CUSTOM_ENV_CI_PROJECT_NAME"
    )
    job_id: str | None = Field(default=None, validation_alias="CUSTOM_ENV_CI_JOB_ID")
    build_failure_exit_code: int = Field(
        default=1, validation_alias="BUILD_FAILURE_EXIT_CODE"
    )
    system_failure_exit_code: int = Field(
        default=2, validation_alias="SYSTEM_FAILURE_EXIT_CODE"
    )

    base_images_dir: str = Field(default="/var/lib/libvirt/images")
    vm_images_dir: str = Field(default="/var/lib/libvirt/images")

    libvirt_uri: str | None = Field(default=None)
    qemu_img_binary: str = Field(default="qemu-img")
    virsh_binary: str = Field(default="virsh")
    virt_install_binary: str = Field(default="virt-install")
    os_variant: str | None = Field(default=None)
    address_source: Literal["lease", "agent", "arp"] | None = Field(default=None)
    shutdown_mode: Literal["shutdown", "destroy"] = Field(default="shutdown")

    ssh_binary: str = Field(default="ssh")
    ssh_user: str = Field(default="gitlab-runner")
    ssh_private_key_path: str = Field(default="/root/.ssh/id_rsa")
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_connect_timeout_sec: int = Field(default=5, ge=1)
    ssh_verify_host_key: bool = Field(default=False)
    ssh_known_hosts_file: str | None = Field(default=None)
    remote_shell: str = Field(default="/bin/bash")

    ip_wait_attempts: int = Field(default=120, ge=1)
    ip_wait_interval_sec: float = Field(default=1.0, ge=0)
    ssh_wait_attempts: int = Field(default=60, ge=1)
    ssh_wait_interval_sec: float = Field(default=1.0, ge=0)

    command_timeout_sec: int = Field(default=600, ge=1)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    def validate_runtime(self) -> None:
        codes = {
            "BUILD_FAILURE_EXIT_CODE": self.build_failure_exit_code,
            "SYSTEM_FAILURE_EXIT_CODE": self.system_failure_exit_code,
        }
        for name, code in codes.items():
            if code == 0:
                raise UsageFailure(f"{name} must be non-zero", stage="config")
            if code == USAGE_EXIT_CODE:
                raise UsageFailure(
                    f"{name} must differ from the usage exit code {USAGE_EXIT_CODE}",
                    stage="config",
                )
        if self.build_failure_exit_code == self.system_failure_exit_code:
            raise UsageFailure(
                "BUILD_FAILURE_EXIT_CODE and SYSTEM_FAILURE_EXIT_CODE must differ",
                stage="config",
            )
        if self.ssh_verify_host_key and not self.ssh_known_hosts_file:
            raise UsageFailure(
                "ssh_known_hosts_file is required when ssh_verify_host_key is enabled",
                stage="config",
            )

    def job_context(self) -> JobContext:
        values = {
            "CUSTOM_ENV_CI_PROJECT_NAME": self.project_name,
            "CUSTOM_ENV_CI_JOB_ID": self.job_id,
        }
        for name, value in values.items():
            if not value or not value.strip():
                raise UsageFailure(f"{name} is not set", stage="job_context")
            if "/" in value:
                raise UsageFailure(
                    f"{name} must not contain a path separator: {value!r}",
                    stage="job_context",
                )
        return JobContext(project_name=self.project_name, job_id=self.job_id)


@lru_cache(maxsize=1)
def get_settings() -> ExecutorSettings:
    return ExecutorSettings()
