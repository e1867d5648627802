from setuptools import find_packages, setup

setup(
    name="ppg_vitals",
    version="0.1.0",
    description="Fingertip camera PPG: heart rate, SpO2, blood pressure and HRV",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "opencv-python>=4.8",
        "PyWavelets>=1.4",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "ppg-vitals=main:main",
        ],
    },
)
