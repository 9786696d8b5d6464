# releaseci_workflow.py
# Release pipeline for chdig: spell-check gate, then static Linux packages
# and a macOS binary built in parallel.
from __future__ import annotations

from releaseci import dsl
from releaseci.dsl import build_step, dependency_cache, gate, platform_job, prerequisite, sh, verify
from releaseci.triggers import TriggerFilter

SOURCE = "https://github.com/azat/chdig.git"

# Stick to 0.23.0: static linking is broken on 0.24.0
# (https://github.com/indygreg/PyOxidizer/issues/673)
PYOXIDIZER = "PyOxidizer==0.23.0"
NFPM_DEB = "https://github.com/goreleaser/nfpm/releases/download/v2.25.0/nfpm_amd64.deb"


def rust_cache(target: str):
    return dependency_cache(
        "target",
        "~/.cargo/registry",
        "~/.cargo/git",
        inputs=["Cargo.lock", "rust-toolchain*"],
        namespace=f"rust-{target}",
        save_on_failure=True,
    )


def linux_musl():
    triple = "x86_64-unknown-linux-musl"
    return platform_job(
        "linux-x86_64-musl",
        build_step("Build packages", f"make packages target={triple}"),
        sh(
            "Latest aliases",
            "for postfix in .x86_64.rpm -x86_64.pkg.tar.zst _amd64.deb; do "
            "cp chdig*$postfix chdig-latest$postfix; done",
            kind="package",
        ),
        verify("Check package", "sudo dpkg -i chdig-latest_amd64.deb && chdig --help"),
        prerequisites=[
            prerequisite("Install PyOxidizer", f"pip install {PYOXIDIZER}"),
            prerequisite(
                "Install nfpm",
                f'curl -sS -Lo /tmp/nfpm.deb "{NFPM_DEB}" && sudo dpkg -i /tmp/nfpm.deb',
            ),
            # cityhash for clickhouse-rs needs a musl C toolchain
            prerequisite("Install musl-tools", "sudo apt-get install -y musl-tools"),
            # there is no musl-g++ in musl-tools, clang can cross compile
            prerequisite("Link musl-g++", "sudo ln -srf /usr/bin/clang /usr/bin/musl-g++"),
            prerequisite("Add musl target", f"rustup target add {triple}"),
        ],
        artifacts=["*.deb", "*.rpm", "*.tar.*"],
        collection="linux-packages",
        source=SOURCE,
        cache=rust_cache(triple),
        requires=["git", "make", "cargo", "rustup"],
    )


def macos_x86_64():
    return platform_job(
        "macos-x86_64",
        build_step("Build binary", "make deploy-binary && cp target/chdig chdig-macos-x86_64"),
        sh("Compress", "gzip --keep chdig-macos-x86_64", kind="package"),
        verify("Check binary", "./chdig-macos-x86_64 --help"),
        prerequisites=[
            prerequisite("Worker info", "ls -al /Library/Developer/CommandLineTools/SDKs/", continue_on_failure=True),
            prerequisite("Install PyOxidizer", f"pip3 install {PYOXIDIZER}"),
        ],
        artifacts=["chdig-macos-x86_64.gz"],
        collection="macos-packages",
        source=SOURCE,
        cache=rust_cache("x86_64-apple-darwin"),
        requires=["git", "make", "cargo"],
    )


def pipeline():
    return dsl.pipeline(
        gate(sh("Spell Check Repo", "typos --config typos.toml"), name="spellcheck", requires=["typos"]),
        linux_musl(),
        macos_x86_64(),
        trigger=TriggerFilter(
            branches=["main"],
            paths_ignore=["**.md", "Documentation/**"],
            types=["opened", "reopened", "synchronize", "manual"],
        ),
    )
