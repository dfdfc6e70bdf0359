"""conductor - 多步骤管线编排引擎"""

__version__ = "0.1.0"
