from setuptools import setup, find_packages
import re
from pathlib import Path


def read_readme():
    this_directory = Path(__file__).parent
    readme_file = this_directory / 'README.md'
    if readme_file.exists():
        return readme_file.read_text(encoding='utf-8')
    return ""

def get_version():
    init_file = Path(__file__).parent / 'natspack' / '__init__.py'
    if init_file.exists():
        match = re.search(r'__version__\s*=\s*["\']([^"\']+)["\']', init_file.read_text())
        if match:
            return match.group(1)
    return "0.1.0"


setup(
    name="natspack",
    version=get_version(),
    author="natspack Team",
    description="NATS tasks and triggers for workflow playbooks: pub/sub, JetStream pull consumption, request/reply and Key/Value.",
    long_description=read_readme(),
    long_description_content_type='text/markdown',
    packages=find_packages(exclude=['tests', 'tests.*']),
    package_data={
        '': ['*.md', '*.txt', '*.yml', '*.yaml'],
    },
    include_package_data=True,
    python_requires=">=3.11",
    install_requires=[
        "nats-py>=2.6",
        "jinja2>=3.1",
        "pydantic>=2.5",
        "typer>=0.9",
        "pyyaml>=6.0",
    ],
    extras_require={
        'test': [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Networking",
    ],
    keywords="nats jetstream messaging workflow automation playbook",
    entry_points={
        'console_scripts': [
            'natspack=natspack.cli.ctl:app',
        ],
    },
)
