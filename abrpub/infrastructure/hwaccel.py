"""
Hardware encoder capability probing.

Vendor presence is queried with the vendor tools (nvidia-smi, lspci), the
encoders compiled into the local ffmpeg build are listed, and the two are
intersected. Presence alone is never trusted: the recommended encoder is the
first candidate, in vendor priority order, that survives a short synthetic
encode.
"""
import logging
import subprocess
from typing import Dict, List, Optional, Set, Tuple
from abrpub.domain.models import CapabilityReport

SOFTWARE_ENCODER = "libx264"

# Priority order: NVENC > QSV > VAAPI > CPU
ENCODER_PRIORITY: Tuple[str, ...] = ("h264_nvenc", "h264_qsv", "h264_vaapi")

# Which vendors can drive each hardware encoder
ENCODER_VENDORS: Dict[str, Set[str]] = {
    "h264_nvenc": {"nvidia"},
    "h264_qsv": {"intel"},
    "h264_vaapi": {"amd", "intel"},
}


class CapabilityProber:
    """Detects usable hardware encoders. Probe failures mean 'not available'."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", timeout: int = 30, vaapi_device: str = "/dev/dri/renderD128"):
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout
        self.vaapi_device = vaapi_device
        self.logger = logging.getLogger(__name__)

    def _run(self, cmd: List[str]) -> Optional[str]:
        """Runs a probe command; returns stdout or None on any failure."""
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.debug(f"Probe {cmd[0]} unavailable: {e}")
            return None
        if result.returncode != 0:
            self.logger.debug(f"Probe {cmd[0]} exited with {result.returncode}: {result.stderr.strip()[-200:]}")
            return None
        return result.stdout

    def detect_nvidia(self) -> List[str]:
        output = self._run(["nvidia-smi", "--query-gpu=name,driver_version", "--format=csv,noheader,nounits"])
        if not output:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _display_adapters(self) -> List[str]:
        output = self._run(["lspci", "-nn"])
        if not output:
            return []
        adapters = []
        for line in output.splitlines():
            lower = line.lower()
            if "vga" in lower or "display" in lower or "3d controller" in lower:
                adapters.append(line.strip())
        return adapters

    def detect_amd(self, adapters: Optional[List[str]] = None) -> List[str]:
        adapters = self._display_adapters() if adapters is None else adapters
        return [a for a in adapters if "amd" in a.lower() or "advanced micro devices" in a.lower()]

    def detect_intel(self, adapters: Optional[List[str]] = None) -> List[str]:
        adapters = self._display_adapters() if adapters is None else adapters
        return [a for a in adapters if "intel" in a.lower()]

    def list_ffmpeg_encoders(self) -> Set[str]:
        """Parses `ffmpeg -encoders` (lines like ' V....D h264_nvenc  NVIDIA ...')."""
        output = self._run([self.ffmpeg_bin, "-hide_banner", "-encoders"])
        if not output:
            return set()
        encoders = set()
        for line in output.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0].startswith("V") and len(parts[0]) == 6 and parts[1] != "=":
                encoders.add(parts[1])
        return encoders

    def test_encoder(self, encoder: str) -> bool:
        """Runs a one-second synthetic encode through the encoder."""
        cmd = [self.ffmpeg_bin, "-hide_banner", "-v", "error"]
        if encoder == "h264_vaapi":
            cmd.extend(["-vaapi_device", self.vaapi_device])
        cmd.extend(["-f", "lavfi", "-i", "testsrc=duration=1:size=320x240:rate=1"])
        if encoder == "h264_vaapi":
            cmd.extend(["-vf", "format=nv12,hwupload"])
        cmd.extend(["-c:v", encoder, "-t", "1", "-f", "null", "-"])

        ok = self._run(cmd) is not None
        if ok:
            self.logger.info(f"Encoder smoke test passed: {encoder}")
        else:
            self.logger.warning(f"Encoder smoke test failed: {encoder}")
        return ok

    def detect(self, validate: bool = True, force_encoder: Optional[str] = None) -> CapabilityReport:
        """Builds the capability report and selects one encoder."""
        nvidia = self.detect_nvidia()
        adapters = self._display_adapters()
        amd = self.detect_amd(adapters)
        intel = self.detect_intel(adapters)
        ffmpeg_encoders = self.list_ffmpeg_encoders()

        vendors = set()
        if nvidia:
            vendors.add("nvidia")
        if amd:
            vendors.add("amd")
        if intel:
            vendors.add("intel")

        supported = {
            enc for enc in ENCODER_PRIORITY
            if enc in ffmpeg_encoders and ENCODER_VENDORS[enc] & vendors
        }

        if force_encoder:
            candidates = [] if force_encoder == SOFTWARE_ENCODER else [force_encoder]
            self.logger.info(f"Encoder forced: {force_encoder}")
        else:
            candidates = [enc for enc in ENCODER_PRIORITY if enc in supported]

        validated = set()
        recommended = SOFTWARE_ENCODER
        for candidate in candidates:
            if not validate or self.test_encoder(candidate):
                if validate:
                    validated.add(candidate)
                recommended = candidate
                break

        if candidates and recommended == SOFTWARE_ENCODER:
            self.logger.warning("No hardware encoder passed validation, falling back to CPU encoding")

        report = CapabilityReport(
            vendors=frozenset(vendors),
            supported_encoders=frozenset(supported),
            validated_encoders=frozenset(validated),
            recommended_encoder=recommended,
            details={
                "nvidia": tuple(nvidia),
                "amd": tuple(amd),
                "intel": tuple(intel),
                "ffmpeg_encoders": tuple(sorted(e for e in ffmpeg_encoders if "h264" in e or e == SOFTWARE_ENCODER)),
            },
        )
        self.logger.info(
            f"Capabilities: vendors={sorted(report.vendors) or 'none'} "
            f"supported={sorted(report.supported_encoders) or 'none'} recommended={report.recommended_encoder}"
        )
        return report
