"""Package configuration."""

from setuptools import find_namespace_packages, find_packages, setup

# The below list is only for CI
# For prod add the libs to the spicerack hosts configuration
install_requires = [
    'wikimedia-spicerack',
    'wmflib',
    'cumin',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'pytest>=6.1.0',
        'freezegun',
        'pre-commit',
    ],
}

setup_requires = [
    'setuptools_scm>=1.15.0',
]

setup(
    author='Mail Operations',
    author_email='mailops@corp.example.org',
    description='Mail operations automation and orchestration cookbooks',
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['automation', 'orchestration', 'cookbooks', 'exchange', 'mailops'],
    license='GPLv3+',
    name='mailops-cookbooks',
    packages=(
        find_packages(exclude=['*.tests', '*.tests.*'])
        + find_namespace_packages(include=["cookbooks.*"])
    ),
    platforms=['GNU/Linux'],
    setup_requires=setup_requires,
    use_scm_version={'fallback_version': '0.1.0'},
    zip_safe=False,
)
