from setuptools import setup

setup(
    name="algebraic-effects",
    packages=["algebraic_effects"],
    version="0.1.0",
    install_requires=[
    ],
    extras_require={
        "test": ["pytest"],
    },
    description="Algebraic effects with multi-shot continuations, driven by generators",
    python_requires='>=3.7',
)
