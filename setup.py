"""Build webrtc-rendezvous package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="webrtc-rendezvous",
    version="0.1.0",
    description=(
        "WebRTC rendezvous server, negotiation state machine, and chunked "
        "data channel transfers"
    ),
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests*", "testing*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.5.0",
        "click",
        "cryptography",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13.0",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio>=0.21.0",
            "pytest-timeout",
        ],
    },
    entry_points={
        "console_scripts": [
            "rendezvous-server=rendezvous.signaling.run:cli",
            "rendezvous-peer=rendezvous.cli:cli",
        ],
    },
)
