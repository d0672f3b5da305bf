import os
import sys

from setuptools import setup

# Don't import the posthog_core package here, since deps may not be installed
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "posthog_core"))
from version import VERSION  # noqa: E402

long_description = """
PostHog is developer-friendly, self-hosted product analytics.
posthog-core is the stateful client core: identity, a persisted event queue,
batched delivery and cached feature flags.

This package requires Python 3.9 or higher.
"""

# Minimal setup.py for backward compatibility
# Most configuration is in pyproject.toml
setup(
    name="posthog-core",
    version=VERSION,
    url="https://github.com/posthog/posthog-python",
    author="Posthog",
    author_email="hey@posthog.com",
    maintainer="PostHog",
    maintainer_email="hey@posthog.com",
    license="MIT License",
    description="Stateful PostHog client core for python applications.",
    long_description=long_description,
)
