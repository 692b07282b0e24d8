"""Mirror probes: find out whether a distribution image exists upstream.

Two strategies are available:

* ``PatternProbe`` builds the download URL from a naming convention and
  checks it with a HEAD request. Rolling channels are pattern probes with the
  version ``latest``.
* ``ListingProbe`` scrapes a directory listing for version directories, picks
  the highest (or the requested) version and resolves it to a URL, optionally
  descending one level into an image directory to find the exact filename.

A probe never raises: every network or parse problem is logged and reported
as "not found" so one broken mirror cannot spoil a catalog refresh.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests

from vps_manager.constants import PROBE_TIMEOUT, USER_AGENT
from vps_manager.models import CatalogEntry
from vps_manager.utils import log


def version_key(version: str) -> Tuple[int, ...]:
    """Numeric sort key: '15.10' > '15.6', 'v3.21' > 'v3.9'."""
    return tuple(int(part) for part in re.findall(r"\d+", version))


def check_url(session: requests.Session, url: str, timeout: float) -> bool:
    """Return True if ``url`` answers with a non-error status."""
    resp = session.head(url, timeout=timeout, allow_redirects=True)
    if resp.status_code < 400:
        return True
    # Some servers reject HEAD; fall back to GET with streaming
    if resp.status_code in (403, 405):
        resp = session.get(url, timeout=timeout, allow_redirects=True, stream=True)
        resp.close()
        return resp.status_code < 400
    return False


def fetch_listing(session: requests.Session, url: str, timeout: float) -> str:
    resp = session.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.text


def _basename(url: str) -> str:
    return urlparse(url).path.rsplit("/", 1)[-1]


class MirrorProbe(ABC):
    """Checks one distribution's download location for one release."""

    def __init__(self, distro: str, version: Optional[str] = None, timeout: float = PROBE_TIMEOUT) -> None:
        self.distro = distro
        self.version = version
        self.timeout = timeout

    @property
    def label(self) -> str:
        return f"{self.distro}:{self.version or 'latest'}"

    def probe(self, session: requests.Session) -> Optional[CatalogEntry]:
        try:
            entry = self.discover(session)
        except Exception as exc:
            log("WARN", f"Probe {self.label} failed: {exc.__class__.__name__}: {exc}")
            return None
        if entry is None:
            log("DEBUG", f"Probe {self.label}: nothing found")
        return entry

    @abstractmethod
    def discover(self, session: requests.Session) -> Optional[CatalogEntry]:
        """Return the entry this probe finds, or None."""


class PatternProbe(MirrorProbe):
    def __init__(
        self,
        distro: str,
        version: str,
        display_name: str,
        url: str,
        is_lts: bool = False,
        timeout: float = PROBE_TIMEOUT,
    ) -> None:
        super().__init__(distro, version, timeout)
        self.display_name = display_name
        self.url = url
        self.is_lts = is_lts

    def discover(self, session: requests.Session) -> Optional[CatalogEntry]:
        if not check_url(session, self.url, self.timeout):
            return None
        return CatalogEntry(
            display_name=self.display_name,
            distro=self.distro,
            version=str(self.version),
            artifact_filename=_basename(self.url),
            download_url=self.url,
            is_lts=self.is_lts,
        )


class ListingProbe(MirrorProbe):
    """Scrape ``index_url`` for versions, then resolve one to a download URL.

    ``version_pattern`` must capture the version in group 1. Exactly one of
    ``url_template`` (existence-checked) or ``image_dir`` + ``image_pattern``
    (scraped for the exact filename) resolves the chosen version.
    """

    def __init__(
        self,
        distro: str,
        index_url: str,
        version_pattern: str,
        display_name: str,
        version: Optional[str] = None,
        min_version: Optional[str] = None,
        url_template: Optional[str] = None,
        image_dir: Optional[str] = None,
        image_pattern: Optional[str] = None,
        is_lts: bool = False,
        timeout: float = PROBE_TIMEOUT,
    ) -> None:
        super().__init__(distro, version, timeout)
        if bool(url_template) == bool(image_dir and image_pattern):
            raise ValueError("ListingProbe needs either url_template or image_dir + image_pattern")
        self.index_url = index_url
        self.version_pattern = re.compile(version_pattern)
        self.display_name = display_name
        self.min_version = min_version
        self.url_template = url_template
        self.image_dir = image_dir
        self.image_pattern = re.compile(image_pattern) if image_pattern else None
        self.is_lts = is_lts

    def candidates(self, body: str) -> List[str]:
        found = {match.group(1) for match in self.version_pattern.finditer(body)}
        if self.min_version:
            floor = version_key(self.min_version)
            found = {ver for ver in found if version_key(ver) >= floor}
        return sorted(found, key=version_key)

    def discover(self, session: requests.Session) -> Optional[CatalogEntry]:
        versions = self.candidates(fetch_listing(session, self.index_url, self.timeout))
        if not versions:
            return None
        if self.version is not None:
            if self.version not in versions:
                return None
            chosen = self.version
        else:
            chosen = versions[-1]

        url = self._resolve(session, chosen)
        if url is None:
            return None
        return CatalogEntry(
            display_name=self.display_name.format(version=chosen),
            distro=self.distro,
            version=chosen,
            artifact_filename=_basename(url),
            download_url=url,
            is_lts=self.is_lts,
        )

    def _resolve(self, session: requests.Session, version: str) -> Optional[str]:
        if self.url_template:
            url = urljoin(self.index_url, self.url_template.format(version=version))
            return url if check_url(session, url, self.timeout) else None

        assert self.image_dir is not None and self.image_pattern is not None
        dir_url = urljoin(self.index_url, self.image_dir.format(version=version))
        names = sorted(set(self.image_pattern.findall(fetch_listing(session, dir_url, self.timeout))))
        if not names:
            return None
        return urljoin(dir_url, names[-1])


def default_probes(timeout: float = PROBE_TIMEOUT) -> List[MirrorProbe]:
    """The probe set used for the public catalog."""
    probes: List[MirrorProbe] = []

    # Ubuntu LTS: pinned releases plus whatever LTS is newest on the mirror
    ubuntu_index = "https://cloud-images.ubuntu.com/releases/"
    ubuntu_url = "{version}/release/ubuntu-{version}-server-cloudimg-amd64.img"
    for ver in ("22.04", "24.04"):
        probes.append(
            PatternProbe(
                "ubuntu", ver, f"Ubuntu {ver} LTS",
                urljoin(ubuntu_index, ubuntu_url.format(version=ver)),
                is_lts=True, timeout=timeout,
            )
        )
    probes.append(
        ListingProbe(
            "ubuntu", ubuntu_index, r'href="(2[2-9]\.04)/"', "Ubuntu {version} LTS",
            url_template=ubuntu_url, is_lts=True, timeout=timeout,
        )
    )

    for ver, codename in (("11", "bullseye"), ("12", "bookworm"), ("13", "trixie")):
        probes.append(
            PatternProbe(
                "debian", ver, f"Debian {ver} ({codename})",
                f"https://cloud.debian.org/images/cloud/{codename}/latest/debian-{ver}-generic-amd64.qcow2",
                is_lts=True, timeout=timeout,
            )
        )

    for major in range(8, 12):
        probes.extend(
            [
                PatternProbe(
                    "alma", str(major), f"AlmaLinux {major}",
                    f"https://repo.almalinux.org/almalinux/{major}/cloud/x86_64/images/"
                    f"AlmaLinux-{major}-GenericCloud-latest.x86_64.qcow2",
                    is_lts=True, timeout=timeout,
                ),
                PatternProbe(
                    "rocky", str(major), f"Rocky Linux {major}",
                    f"https://dl.rockylinux.org/pub/rocky/{major}/images/x86_64/"
                    f"Rocky-{major}-GenericCloud.latest.x86_64.qcow2",
                    is_lts=True, timeout=timeout,
                ),
                PatternProbe(
                    "centos", str(major), f"CentOS Stream {major}",
                    f"https://cloud.centos.org/centos/{major}-stream/x86_64/images/"
                    f"CentOS-Stream-GenericCloud-{major}-latest.x86_64.qcow2",
                    timeout=timeout,
                ),
            ]
        )

    probes.append(
        ListingProbe(
            "fedora", "https://download.fedoraproject.org/pub/fedora/linux/releases/",
            r'href="([0-9]+)/"', "Fedora {version}",
            image_dir="{version}/Cloud/x86_64/images/",
            image_pattern=r'href="(Fedora-Cloud-Base-Generic-[^"]+\.qcow2)"',
            timeout=timeout,
        )
    )

    leap_index = "https://download.opensuse.org/repositories/Cloud:/Images:/"
    leap_url = "Leap_{version}/images/openSUSE-Leap-{version}.x86_64-NoCloud.qcow2"
    probes.append(
        ListingProbe(
            "opensuse", leap_index, r'href="Leap_([0-9]+\.[0-9]+)/"', "openSUSE Leap {version}",
            min_version="15.5", url_template=leap_url, is_lts=True, timeout=timeout,
        )
    )
    probes.append(
        ListingProbe(
            "opensuse", leap_index, r'href="Leap_([0-9]+\.[0-9]+)/"', "openSUSE Leap {version}",
            version="15.6", url_template=leap_url, is_lts=True, timeout=timeout,
        )
    )

    probes.append(
        ListingProbe(
            "alpine", "https://dl-cdn.alpinelinux.org/alpine/",
            r'href="v(3\.[0-9]+)/"', "Alpine Linux {version}",
            min_version="3.18",
            image_dir="v{version}/releases/cloud/",
            image_pattern=r'href="(nocloud_alpine-[^"]+-x86_64-bios-cloudinit-r0\.qcow2)"',
            is_lts=True, timeout=timeout,
        )
    )

    probes.append(
        PatternProbe(
            "arch", "latest", "Arch Linux (Rolling)",
            "https://geo.mirror.pkgbuild.com/images/latest/Arch-Linux-x86_64-cloudimg.qcow2",
            timeout=timeout,
        )
    )
    return probes
