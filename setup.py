from setuptools import setup, find_packages

setup(
    name="gifdedup",
    version="1.0.0",
    packages=find_packages(include=["gifdedup", "gifdedup.*"]),
    description="Duplicate detection for GIFs, animated images and short videos by escalating similarity tests.",
    author="Max Carlson",
    author_email="carlsonamax@gmail.com",
    python_requires=">=3.10",
    install_requires=[
        "Pillow>=10.0",
        "ImageHash>=4.3",
        "numpy>=1.24",
        "rich>=13.0",
        "PyYAML>=6.0",
        "pydantic>=2.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "gif-dedupe=gifdedup.cli:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
