"""
dpmigrate - concurrent Oracle Data Pump migrations driven by parfiles.

- dpmigrate.core: errors, logging, configuration
- dpmigrate.execution: export→import pipeline scheduler and runners
- dpmigrate.observability: migration report sink
- dpmigrate.cli: ``dpmigrate`` command line
"""

__version__ = "0.1.0"
