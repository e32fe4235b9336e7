from dataclasses import dataclass
from pathlib import Path


VM_ID_PREFIX = "runner"


@dataclass(frozen=True)
class JobContext:
    project_name: str
    job_id: str


@dataclass(frozen=True)
class VmIdentity:
    vm_id: str
    disk_image_path: Path


def derive_identity(
    project_name: str, job_id: str, images_root: str | Path
) -> VmIdentity:
    """Derive the VM name and overlay disk path for a job.

    create, run and cleanup execute as separate processes and only agree on
    which VM they act on because this is a pure function of the job context.
    Nothing here may be cached or persisted.
    """
    vm_id = f"{VM_ID_PREFIX}-{project_name}-{job_id}"
    return VmIdentity(
        vm_id=vm_id, disk_image_path=Path(images_root) / f"{vm_id}.qcow2"
    )


def identity_for(context: JobContext, images_root: str | Path) -> VmIdentity:
    return derive_identity(context.project_name, context.job_id, images_root)
