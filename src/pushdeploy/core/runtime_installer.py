"""Install backend runtimes and auxiliary tools through fallback chains."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.errors import CommandError, FallbackExhaustedError, InstallationError
from pushdeploy.core.fallback import FallbackChain, FallbackResult
from pushdeploy.core.service_controllers import privileged
from pushdeploy.models.backend import BackendVariant

logger = logging.getLogger(__name__)

NVM_INSTALL_URL = "https://raw.githubusercontent.com/nvm-sh/nvm/v0.39.7/install.sh"
GO_DOWNLOAD_URL = "https://go.dev/dl/go{version}.linux-{arch}.tar.gz"
DOCKER_SCRIPT_URL = "https://get.docker.com"

DEFAULT_VERSIONS: dict[BackendVariant, str] = {
    BackendVariant.INTERPRETED: "20",
    BackendVariant.COMPILED: "1.22.5",
    BackendVariant.CONTAINERIZED: "",
    BackendVariant.SUPERVISED: "8.2",
}

_VERSION_PATTERN = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?")


@dataclass(frozen=True, slots=True)
class RuntimeSpec:
    """How to detect one runtime on the host."""

    binary: str
    version_command: tuple[str, ...]
    version_prefix: str


_RUNTIMES: dict[BackendVariant, RuntimeSpec] = {
    BackendVariant.INTERPRETED: RuntimeSpec("node", ("node", "-v"), "v"),
    BackendVariant.COMPILED: RuntimeSpec("go", ("go", "version"), "go version go"),
    BackendVariant.CONTAINERIZED: RuntimeSpec("docker", ("docker", "--version"), "Docker version "),
    BackendVariant.SUPERVISED: RuntimeSpec("php", ("php", "-v"), "PHP "),
}


@dataclass(slots=True)
class InstallResult:
    """Outcome of ensuring a runtime or tool is present."""

    target: str
    installed_version: str | None
    strategy: str | None = None
    already_present: bool = False
    attempts: list[str] = field(default_factory=list)


def parse_version(text: str) -> tuple[int, ...]:
    """Extract the leading dotted version from ``text``; empty tuple if none."""
    match = _VERSION_PATTERN.search(text)
    if match is None:
        return ()
    return tuple(int(part) for part in match.groups() if part is not None)


def satisfies(installed: tuple[int, ...], requested: tuple[int, ...]) -> bool:
    """True when ``installed`` is at least ``requested`` on the requested precision."""
    if not installed:
        return False
    if not requested:
        return True
    return installed[: len(requested)] >= requested


class RuntimeInstaller:
    """Bring a backend's runtime up to the requested version.

    Each variant has an ordered list of installation strategies. Strategies
    are tried in order and a failure only moves on to the next one; the call
    fails with :class:`InstallationError` when none of them work.
    """

    def __init__(self, runner: CommandRunner | None = None, *, arch: str = "amd64") -> None:
        self._runner = runner or CommandRunner()
        self._arch = arch
        self._tools: dict[str, Callable[[], FallbackChain]] = {
            "git": self._git_chain,
            "pm2": self._pm2_chain,
            "composer": self._composer_chain,
        }

    def installed_version(self, variant: BackendVariant) -> str | None:
        runtime = _RUNTIMES[variant]
        if not self._runner.exists(runtime.binary):
            return None
        try:
            result = self._runner.run(list(runtime.version_command), timeout=30)
        except CommandError as exc:
            logger.debug("%s present but version check failed: %s", runtime.binary, exc)
            return None
        output = result.output.strip()
        if output.startswith(runtime.version_prefix):
            output = output[len(runtime.version_prefix) :]
        version = parse_version(output)
        return ".".join(str(part) for part in version) if version else None

    def ensure_runtime(self, variant: BackendVariant, version: str | None = None) -> InstallResult:
        runtime = _RUNTIMES[variant]
        version = version or DEFAULT_VERSIONS[variant]
        current = self.installed_version(variant)
        if current and satisfies(parse_version(current), parse_version(version)):
            logger.info("%s %s already installed", runtime.binary, current)
            return InstallResult(target=runtime.binary, installed_version=current, already_present=True)
        if current:
            logger.info("Upgrading %s from %s to %s", runtime.binary, current, version)
        else:
            logger.info("Installing %s %s", runtime.binary, version)

        chain = self._runtime_chain(variant, version)
        result = self._run_chain(chain)
        installed = self.installed_version(variant)
        return InstallResult(
            target=runtime.binary,
            installed_version=installed,
            strategy=result.strategy,
            attempts=[attempt.name for attempt in result.attempts],
        )

    def ensure_tool(self, name: str) -> InstallResult:
        if name not in self._tools:
            msg = f"No installation strategies for {name!r}"
            raise InstallationError(name, [msg])
        if self._runner.exists(name):
            logger.info("%s already installed", name)
            return InstallResult(target=name, installed_version=None, already_present=True)
        result = self._run_chain(self._tools[name]())
        return InstallResult(
            target=name,
            installed_version=None,
            strategy=result.strategy,
            attempts=[attempt.name for attempt in result.attempts],
        )

    def _run_chain(self, chain: FallbackChain) -> FallbackResult:
        try:
            return chain.run()
        except FallbackExhaustedError as exc:
            raise InstallationError(exc.target, exc.failures) from exc

    def _runtime_chain(self, variant: BackendVariant, version: str) -> FallbackChain:
        if variant is BackendVariant.INTERPRETED:
            return self._node_chain(version)
        if variant is BackendVariant.COMPILED:
            return self._go_chain(version)
        if variant is BackendVariant.CONTAINERIZED:
            return self._docker_chain()
        return self._php_chain(version)

    def _node_chain(self, version: str) -> FallbackChain:
        major = version.split(".")[0]
        nodesource = (
            f"curl -fsSL https://deb.nodesource.com/setup_{major}.x | sudo -E bash - "
            "&& sudo apt-get install -y nodejs"
        )
        nvm = (
            f'[ -d "$HOME/.nvm" ] || curl -o- {NVM_INSTALL_URL} | bash; '
            'export NVM_DIR="$HOME/.nvm"; . "$NVM_DIR/nvm.sh" '
            f"&& nvm install {major} && nvm alias default {major} "
            '&& sudo ln -sf "$NVM_DIR/versions/node/$(nvm current)/bin/node" /usr/local/bin/node '
            '&& sudo ln -sf "$NVM_DIR/versions/node/$(nvm current)/bin/npm" /usr/local/bin/npm'
        )
        return (
            FallbackChain("node", verify=self._runtime_check(BackendVariant.INTERPRETED, version))
            .add("nodesource", self._shell(nodesource))
            .add("nvm", self._shell(nvm))
        )

    def _go_chain(self, version: str) -> FallbackChain:
        tarball = GO_DOWNLOAD_URL.format(version=version, arch=self._arch)
        official = (
            f"curl -fsSL {tarball} -o /tmp/go.tar.gz "
            "&& sudo rm -rf /usr/local/go && sudo tar -C /usr/local -xzf /tmp/go.tar.gz "
            "&& sudo ln -sf /usr/local/go/bin/go /usr/local/bin/go"
        )
        return (
            FallbackChain("go", verify=self._runtime_check(BackendVariant.COMPILED, version))
            .add("apt", self._apt("golang-go"))
            .add("official tarball", self._shell(official))
        )

    def _docker_chain(self) -> FallbackChain:
        script = f"curl -fsSL {DOCKER_SCRIPT_URL} | sudo sh"
        return (
            FallbackChain("docker", verify=self._runtime_check(BackendVariant.CONTAINERIZED, ""))
            .add("apt", self._apt("docker.io", "docker-compose-plugin"))
            .add("get.docker.com", self._shell(script))
        )

    def _php_chain(self, version: str) -> FallbackChain:
        ppa = (
            "sudo add-apt-repository -y ppa:ondrej/php && sudo apt-get update -y "
            f"&& sudo apt-get install -y php{version}-fpm php{version}-cli"
        )
        return (
            FallbackChain("php", verify=self._runtime_check(BackendVariant.SUPERVISED, version))
            .add("apt", self._apt("php-fpm", "php-cli"))
            .add("ondrej ppa", self._shell(ppa))
        )

    def _git_chain(self) -> FallbackChain:
        return FallbackChain("git", verify=self._tool_check("git")).add("apt", self._apt("git"))

    def _pm2_chain(self) -> FallbackChain:
        return (
            FallbackChain("pm2", verify=self._tool_check("pm2"))
            .add("npm global", self._command(privileged(["npm", "install", "-g", "pm2"])))
            .add(
                "npm global --unsafe-perm",
                self._command(privileged(["npm", "install", "-g", "pm2", "--unsafe-perm"])),
            )
        )

    def _composer_chain(self) -> FallbackChain:
        installer = (
            "curl -fsSL https://getcomposer.org/installer -o /tmp/composer-setup.php "
            "&& sudo php /tmp/composer-setup.php --install-dir=/usr/local/bin --filename=composer"
        )
        return (
            FallbackChain("composer", verify=self._tool_check("composer"))
            .add("apt", self._apt("composer"))
            .add("getcomposer.org", self._shell(installer))
        )

    def _runtime_check(self, variant: BackendVariant, version: str) -> Callable[[], bool]:
        def check() -> bool:
            current = self.installed_version(variant)
            return current is not None and satisfies(parse_version(current), parse_version(version))

        return check

    def _tool_check(self, name: str) -> Callable[[], bool]:
        return lambda: self._runner.exists(name)

    def _apt(self, *packages: str) -> Callable[[], object]:
        def install() -> object:
            self._runner.run(privileged(["apt-get", "update", "-y"]))
            return self._runner.run(privileged(["apt-get", "install", "-y", *packages]))

        return install

    def _shell(self, script: str) -> Callable[[], object]:
        return lambda: self._runner.run_shell(script)

    def _command(self, command: list[str]) -> Callable[[], object]:
        return lambda: self._runner.run(command)
