# src/bitbucket_auth/utils/headless_detection.py

import os
import sys
import logging

lib_logger = logging.getLogger("bitbucket_auth")


def is_headless_environment() -> bool:
    """
    Detects if the current environment is headless (no GUI available).

    Returns:
        True if headless environment is detected, False otherwise

    Detection logic:
    - Linux/Unix: Check DISPLAY / WAYLAND_DISPLAY environment variables
    - SSH detection: Check SSH_CONNECTION or SSH_CLIENT
    - CI environments: Check common CI environment variables
    - Containers: Check for Docker/Podman marker files
    """
    headless_indicators = []

    # DISPLAY is an X11 variable; macOS uses Quartz and leaves it unset even with a GUI
    if os.name != "nt" and sys.platform != "darwin":
        display = os.getenv("DISPLAY") or os.getenv("WAYLAND_DISPLAY")
        if display is None or display.strip() == "":
            headless_indicators.append("No DISPLAY variable (Linux headless)")

    if os.getenv("SSH_CONNECTION") or os.getenv("SSH_CLIENT") or os.getenv("SSH_TTY"):
        headless_indicators.append("SSH connection detected")

    ci_vars = [
        "CI",
        "GITHUB_ACTIONS",
        "GITLAB_CI",
        "JENKINS_URL",
        "BITBUCKET_BUILD_NUMBER",  # Bitbucket Pipelines
        "CIRCLECI",
        "BUILDKITE",
        "TF_BUILD",
    ]
    for var in ci_vars:
        if os.getenv(var):
            headless_indicators.append(f"CI environment detected ({var})")
            break

    if os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv"):
        headless_indicators.append("Container environment detected")

    is_headless = len(headless_indicators) > 0

    if is_headless:
        lib_logger.info(
            f"Headless environment detected: {'; '.join(headless_indicators)}"
        )
    else:
        lib_logger.debug(
            "GUI environment detected, browser auto-open will be attempted"
        )

    return is_headless
