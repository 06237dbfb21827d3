"""
crabshield/detectors/dependencies.py
════════════════════════════════════

Supply-chain detectors shared by every chain.

  DEP-001  outdated-dependencies     chain SDK declared at a release with a published advisory
  DEP-002  supply-chain-risk         wildcard versions, unpinned git sources, known-malicious crates
  DEP-003  build-script-abuse        build.rs downloads, spawns a shell or writes outside OUT_DIR
  DEP-004  proc-macro-supply-chain   proc-macro crate without a pinned version

DEP-001, DEP-002 and DEP-004 read a crate's Cargo.toml and run once per
manifest.  DEP-003 reads ``build.rs`` like any other source file.

Version requirements are judged by their lower bound: ``"1.5"``,
``"^1.5"`` and ``">= 1.5.0"`` all mean 1.5.0.  Only the declared
requirement is checked, never Cargo.lock.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Optional, Tuple

from crabshield.chains import Chain
from crabshield.detectors.base import (
    Detector,
    FileContext,
    ManifestContext,
    ManifestDetector,
)
from crabshield.findings import Confidence, Finding, Severity
from crabshield.syntax import call_name, call_path, node_text, walk

Version = Tuple[int, int, int]

_VERSION_RE = re.compile(r"^\s*(?:\^|~|=|>=)?\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def parse_version(requirement: str) -> Optional[Version]:
    """Lower bound of a Cargo version requirement; ``None`` if unparseable."""
    first = requirement.split(",")[0]
    match = _VERSION_RE.match(first)
    if match is None:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor or 0), int(patch or 0)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1: DEPENDENCY TABLES
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Dependency:
    """
    One entry of a dependency table.

    ``name`` is the key as written; ``package`` is the crate it resolves to
    (they differ for ``foo = { package = "bar" }`` renames).
    """
    name: str
    package: str
    spec: Any
    table: str

    @property
    def version(self) -> Optional[str]:
        if isinstance(self.spec, str):
            return self.spec
        if isinstance(self.spec, dict) and isinstance(self.spec.get("version"), str):
            return self.spec["version"]
        return None

    @property
    def is_path(self) -> bool:
        return isinstance(self.spec, dict) and "path" in self.spec

    @property
    def is_git(self) -> bool:
        return isinstance(self.spec, dict) and "git" in self.spec

    @property
    def git_is_pinned(self) -> bool:
        return isinstance(self.spec, dict) and ("rev" in self.spec or "tag" in self.spec)

    @property
    def inherits_workspace(self) -> bool:
        return isinstance(self.spec, dict) and self.spec.get("workspace") is True

    @property
    def is_dev(self) -> bool:
        return self.table == "dev-dependencies"


def iter_dependencies(manifest: Mapping[str, Any],
                      tables: Tuple[str, ...] = ("dependencies", "dev-dependencies",
                                                 "workspace.dependencies"),
                      ) -> Iterator[Dependency]:
    """Entries of the named dependency tables, in declaration order."""
    for table_name in tables:
        table: Any = manifest
        for part in table_name.split("."):
            table = table.get(part) if isinstance(table, dict) else None
        if not isinstance(table, dict):
            continue
        for name, spec in table.items():
            package = name
            if isinstance(spec, dict) and isinstance(spec.get("package"), str):
                package = spec["package"]
            yield Dependency(name, package, spec, table_name)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2: MANIFEST DETECTORS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Advisory:
    """Vulnerable ``[low, high)`` version ranges of one crate."""
    crate: str
    description: str
    reference: str
    chain: Chain
    ranges: Tuple[Tuple[Version, Version], ...]

    def affects(self, version: Version) -> bool:
        return any(low <= version < high for low, high in self.ranges)


_ZERO: Version = (0, 0, 0)

ADVISORIES: Tuple[Advisory, ...] = (
    Advisory("cosmwasm-std", "Uint256::pow/Int256::neg use wrapping math",
             "CWA-2024-002 / CVE-2024-58263", Chain.COSMWASM,
             ((_ZERO, (1, 4, 4)), ((1, 5, 0), (1, 5, 4)), ((2, 0, 0), (2, 0, 2)))),
    Advisory("cosmwasm-vm", "VM memory safety issue", "CWA-2025-001", Chain.COSMWASM,
             ((_ZERO, (1, 5, 8)), ((2, 0, 0), (2, 0, 6)))),
    Advisory("near-sdk", "legacy callback handling issues", "near-sdk < 4.0.0", Chain.NEAR,
             ((_ZERO, (4, 0, 0)),)),
    Advisory("ink", "no reentrancy-safe defaults", "ink! < 4.0.0", Chain.INK,
             ((_ZERO, (4, 0, 0)),)),
    Advisory("anchor-lang", "account validation fixes", "anchor-lang < 0.28.0", Chain.SOLANA,
             ((_ZERO, (0, 28, 0)),)),
    Advisory("solana-program", "runtime fixes", "solana-program < 1.16.0", Chain.SOLANA,
             ((_ZERO, (1, 16, 0)),)),
)

_ADVISORIES_BY_CRATE = {a.crate: a for a in ADVISORIES}

KNOWN_MALICIOUS_CRATES = frozenset({
    "rustdecimal", "faster_log", "async_println", "finch-rust", "finch-rst",
    "sha-rust", "sha-rst", "finch_cli_rust", "polymarket-clients-sdk",
    "polymarket-client-sdks",
})


class OutdatedDependencyDetector(ManifestDetector):
    id = "DEP-001"
    name = "outdated-dependencies"
    description = "Chain SDK dependency declared at a version with a published advisory."
    severity = Severity.HIGH
    confidence = Confidence.HIGH

    def detect(self, ctx: ManifestContext) -> Iterator[Finding]:
        for dep in iter_dependencies(ctx.manifest):
            advisory = _ADVISORIES_BY_CRATE.get(dep.package)
            if advisory is None or dep.is_path or dep.is_git:
                continue
            requirement = dep.version
            if not requirement or requirement.strip() == "*":
                continue
            version = parse_version(requirement)
            if version is None or not advisory.affects(version):
                continue
            where = "workspace dependency" if dep.table == "workspace.dependencies" else "dependency"
            yield self.finding(
                ctx, dep.name,
                f"Vulnerable {where}: {dep.package} = \"{requirement}\" "
                f"({advisory.description})",
                recommendation=(
                    f"Update {dep.package} to a patched version. "
                    f"Advisory: {advisory.reference}"
                ),
                chain=advisory.chain,
            )


def is_wildcard_requirement(requirement: str) -> bool:
    text = requirement.strip()
    return (
        text == "*"
        or text.endswith(".*")
        or text in (">= 0", ">=0", "> 0", ">0")
        or text.startswith((">= 0.", ">=0.", "> 0.", ">0."))
    )


class SupplyChainDetector(ManifestDetector):
    """
    Known-malicious names are reported in every table.  Unpinned git
    sources are reported in every table; wildcards only outside
    ``[dev-dependencies]``, which crates.io does not publish.
    """

    id = "DEP-002"
    name = "supply-chain-risk"
    description = "Wildcard versions, unpinned git dependencies and known-malicious crates."
    severity = Severity.HIGH
    confidence = Confidence.HIGH

    def detect(self, ctx: ManifestContext) -> Iterator[Finding]:
        for dep in iter_dependencies(ctx.manifest):
            if dep.package in KNOWN_MALICIOUS_CRATES:
                yield self.finding(
                    ctx, dep.name,
                    f"Known malicious crate '{dep.package}' (typosquatting / "
                    f"supply-chain attack)",
                    recommendation=f"Remove '{dep.package}' immediately.",
                )
                continue
            if dep.is_path or dep.inherits_workspace:
                continue
            if dep.is_git:
                if not dep.git_is_pinned:
                    yield self.finding(
                        ctx, dep.name,
                        f"Git dependency '{dep.name}' has no rev or tag and follows "
                        f"a mutable branch",
                        confidence=Confidence.MEDIUM,
                        recommendation=(
                            f"Pin '{dep.name}' with rev = \"<commit>\" or "
                            f"tag = \"<version>\"."
                        ),
                    )
                continue
            requirement = dep.version
            if dep.is_dev or requirement is None:
                continue
            if is_wildcard_requirement(requirement):
                yield self.finding(
                    ctx, dep.name,
                    f"Wildcard version for '{dep.name}': \"{requirement}\" accepts "
                    f"any future release",
                    recommendation=(
                        f"Pin '{dep.name}' to a version range such as \"1.0\" "
                        f"or \"^1.2.3\"."
                    ),
                )


_PROC_MACRO_SUFFIXES = ("_derive", "-derive", "_macro", "-macro", "_macros", "-macros")


def is_proc_macro_name(name: str) -> bool:
    return name.endswith(_PROC_MACRO_SUFFIXES) or "proc-macro" in name or "proc_macro" in name


def is_unpinned_requirement(requirement: str) -> bool:
    """``*`` or a bare major version such as ``"1"`` / ``"^2"``."""
    text = requirement.strip()
    if text == "*":
        return True
    bare = text.lstrip("^~").strip()
    return bare.isdigit()


class ProcMacroPinningDetector(ManifestDetector):
    id = "DEP-004"
    name = "proc-macro-supply-chain"
    description = "Proc-macro dependencies run at compile time and should be pinned."
    severity = Severity.HIGH
    confidence = Confidence.LOW
    recommendation = (
        "Pin proc-macro dependencies to exact versions (e.g. \"=1.2.3\"); "
        "they execute at compile time with full access to the build machine."
    )

    def detect(self, ctx: ManifestContext) -> Iterator[Finding]:
        for dep in iter_dependencies(ctx.manifest, ("dependencies",)):
            if not is_proc_macro_name(dep.package):
                continue
            if dep.is_path or dep.inherits_workspace:
                continue
            if dep.is_git:
                if not dep.git_is_pinned:
                    yield self.finding(
                        ctx, dep.name,
                        f"Unpinned proc-macro dependency '{dep.name}': git "
                        f"source without rev or tag",
                    )
                continue
            requirement = dep.version
            if requirement is not None and is_unpinned_requirement(requirement):
                yield self.finding(
                    ctx, dep.name,
                    f"Unpinned proc-macro dependency '{dep.name}': "
                    f"version \"{requirement}\"",
                )


# ═════════════════════════════════════════════════════════════════════════
#  PART 3: BUILD SCRIPTS
# ═════════════════════════════════════════════════════════════════════════

_NETWORK_PATHS = ("reqwest::", "ureq::", "curl::", "hyper::Client", "TcpStream::connect")
_NETWORK_METHODS = frozenset({"download"})
_SHELL_PROGRAMS = frozenset({"sh", "bash", "zsh", "cmd", "powershell", "pwsh"})
_DOWNLOAD_PROGRAMS = frozenset({"curl", "wget"})
_FS_WRITES = frozenset({"write", "create_dir", "create_dir_all", "copy", "rename"})


def is_build_script(path: str) -> bool:
    return path == "build.rs" or path.endswith("/build.rs")


def _command_program(node) -> Optional[str]:
    """``"sh"`` for ``Command::new("sh")``, else ``None``."""
    if not call_path(node).endswith("Command::new"):
        return None
    args = node.child_by_field_name("arguments")
    if args is None or args.named_child_count != 1:
        return None
    arg = args.named_children[0]
    if arg.type != "string_literal":
        return None
    return node_text(arg).strip('"')


class BuildScriptDetector(Detector):
    id = "DEP-003"
    name = "build-script-abuse"
    description = "build.rs reaches the network, spawns a shell or writes outside OUT_DIR."
    severity = Severity.CRITICAL
    confidence = Confidence.MEDIUM
    recommendation = (
        "Build scripts should not download files or run shell commands. "
        "Vendor build inputs and write generated files under OUT_DIR only."
    )

    def _reason(self, ctx: FileContext, node) -> Optional[str]:
        callee = node.child_by_field_name("function")
        if callee is not None and callee.type == "field_expression":
            if call_name(node) in _NETWORK_METHODS:
                return f"network access via '.{call_name(node)}()'"
            return None
        path = call_path(node)
        if any(marker in path for marker in _NETWORK_PATHS):
            return f"network access via '{path}'"
        program = _command_program(node)
        if program in _DOWNLOAD_PROGRAMS:
            return f"network access via Command::new(\"{program}\")"
        if program in _SHELL_PROGRAMS:
            return f"shell execution via Command::new(\"{program}\")"
        if path.startswith(("fs::", "std::fs::")) and call_name(node) in _FS_WRITES:
            fn = ctx.function_at(node)
            scope = fn.body_text if fn is not None else node_text(node)
            if "OUT_DIR" not in scope:
                return f"filesystem write via '{path}' outside OUT_DIR"
        return None

    def detect(self, ctx: FileContext) -> Iterator[Finding]:
        if not is_build_script(ctx.path):
            return
        for node in walk(ctx.root):
            if node.type != "call_expression":
                continue
            reason = self._reason(ctx, node)
            if reason is not None:
                yield self.finding(ctx, node, f"Build script performs {reason}")


DEPENDENCY_DETECTORS: List[type] = [
    OutdatedDependencyDetector,
    SupplyChainDetector,
    BuildScriptDetector,
    ProcMacroPinningDetector,
]
