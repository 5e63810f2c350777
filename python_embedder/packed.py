"""Packed resources bundle.

The bundle is a zip archive written deterministically (fixed member order and
timestamps), so identical inputs always produce identical bytes. Member
``resources.json`` indexes the entries; payloads live under
``r/<index>/<field>``.
"""

import io
import json
import logging
import os
import pathlib
import stat
import zipfile

from python_embedder.collection import FileInstall, PreparedResource, PreparedResources
from python_embedder.errors import InvalidArgumentError
from python_embedder.resource import ResourceKind

PACKED_RESOURCES_FORMAT: int = 1
PACKED_RESOURCES_FILENAME: str = "packed-resources"
INDEX_MEMBER: str = "resources.json"

_ZIP_EPOCH: tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)


def _write_member(zf: zipfile.ZipFile, name: str, data: bytes) -> None:
    info: zipfile.ZipInfo = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    zf.writestr(info, data)


def write_packed_resources(prepared: list[PreparedResource]) -> bytes:
    """Serialize in-memory resources into the packed format.

    :param prepared: Prepared resources, in the order they should be indexed.
    :returns: Archive bytes.
    """

    index: list[dict[str, object]] = []
    buf: io.BytesIO = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for i, res in enumerate(prepared):
            payloads: dict[str, str] = {}
            for field_name in sorted(res.payloads):
                member: str = f"r/{i}/{field_name}"
                _write_member(zf, member, res.payloads[field_name])
                payloads[field_name] = member
            index.append(
                {
                    "name": res.name,
                    "kind": res.kind.label,
                    "is_package": res.is_package,
                    "is_stdlib": res.is_stdlib,
                    "is_builtin": res.is_builtin,
                    "init_fn": res.init_fn,
                    "package": res.package,
                    "relative_name": res.relative_name,
                    "payloads": payloads,
                }
            )
        doc: dict[str, object] = {"format": PACKED_RESOURCES_FORMAT, "resources": index}
        _write_member(zf, INDEX_MEMBER, json.dumps(doc, indent=1, sort_keys=True).encode("utf-8"))
    return buf.getvalue()


def read_packed_resources(data: bytes) -> list[dict[str, object]]:
    """Read a packed resources archive back.

    :param data: Archive bytes.
    :returns: Index entries with ``payloads`` mapping field names to bytes.
    :raises InvalidArgumentError: If the archive is not a packed resources bundle.
    """

    try:
        with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
            doc = json.loads(zf.read(INDEX_MEMBER))
            if doc.get("format") != PACKED_RESOURCES_FORMAT:
                raise InvalidArgumentError(f"unsupported packed resources format {doc.get('format')!r}")
            entries: list[dict[str, object]] = []
            for entry in doc["resources"]:
                ResourceKind.from_label(entry["kind"])
                resolved: dict[str, object] = dict(entry)
                resolved["payloads"] = {k: zf.read(v) for k, v in entry["payloads"].items()}
                entries.append(resolved)
    except (zipfile.BadZipFile, KeyError, ValueError, TypeError, AttributeError) as e:
        raise InvalidArgumentError(f"invalid packed resources: {e}") from e
    return entries


class ResourceBundle:
    """Everything the executable carries besides its configuration.

    The packed bytes are produced on first access and cached.
    """

    def __init__(self, prepared: PreparedResources, *, logger: logging.Logger | None = None) -> None:
        self.prepared: PreparedResources = prepared
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("python_embedder")
        self._packed: bytes | None = None

    @property
    def resources(self) -> list[PreparedResource]:
        return self.prepared.resources

    @property
    def files(self) -> list[FileInstall]:
        return self.prepared.files

    @property
    def packed_resources(self) -> bytes:
        if self._packed is None:
            self._packed = write_packed_resources(self.prepared.resources)
            self.logger.info(
                f"python-embedder: packed {len(self.prepared.resources)} resources "
                f"({len(self._packed)} bytes)"
            )
        return self._packed

    def count(self, kind: ResourceKind) -> int:
        return self.prepared.count(kind)

    def write(self, output_dir: pathlib.Path) -> pathlib.Path:
        """Write ``packed-resources`` and every file install under ``output_dir``.

        :returns: Path of the packed resources file.
        :raises InvalidArgumentError: If a file install would land outside ``output_dir``.
        """

        output_dir.mkdir(parents=True, exist_ok=True)
        root: pathlib.Path = output_dir.resolve()
        for install in self.prepared.files:
            if (root / install.path).resolve().is_relative_to(root) is False:
                raise InvalidArgumentError(f"file install {install.path!r} escapes {output_dir}")

        packed_path: pathlib.Path = output_dir / PACKED_RESOURCES_FILENAME
        packed_path.write_bytes(self.packed_resources)

        for install in self.prepared.files:
            dest: pathlib.Path = output_dir / install.path
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(install.data)
            if install.executable is True:
                mode: int = os.stat(dest).st_mode
                os.chmod(dest, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        return packed_path
