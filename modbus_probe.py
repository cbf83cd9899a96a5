from __future__ import annotations

import struct
from decimal import Decimal
from typing import List

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ModbusException

import config
from replacement import connection_config
from replacement.connection_config import ModbusTcpConfig
from replacement.offset import parse_reading
from utils import log

# data type -> (struct format, registers needed)
DATA_TYPES = {
    "float32": (">f", 2),
    "float64": (">d", 4),
    "int16": (">h", 1),
    "uint16": (">H", 1),
    "int32": (">i", 2),
    "uint32": (">I", 2),
}


def decode_registers(registers: List[int], data_type: str) -> float:
    """
    Decode big-endian 16-bit words into a number, high word first:

      float32: [0x4743, 0x5080] -> 50000.5
      uint32:  [0x0001, 0x0000] -> 65536
    """
    try:
        fmt, words = DATA_TYPES[data_type]
    except KeyError:
        raise ValueError(f"Unsupported data type: {data_type}") from None
    if len(registers) < words:
        raise ValueError(f"Insufficient data for {data_type}: got {len(registers)} registers")

    raw = struct.pack(">" + "H" * words, *(w & 0xFFFF for w in registers[:words]))
    return struct.unpack(fmt, raw)[0]


class ModbusMeterProbe:
    """
    Reads the energy register block of a Modbus TCP meter once. Used to
    pre-fill the initial reading of a freshly installed meter.
    """

    def __init__(self, cfg: ModbusTcpConfig, timeout: float = config.DEFAULT_TIMEOUT):
        self.cfg = connection_config.validate(cfg)
        self._client = ModbusTcpClient(self.cfg.ip_address, port=self.cfg.port, timeout=timeout)

    # ------------- lifecycle -------------

    def connect(self) -> bool:
        return self._client.connect()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ModbusMeterProbe":
        if not self.connect():
            raise RuntimeError(f"Could not connect to {self.cfg.ip_address}:{self.cfg.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------- reads -------------

    def read_registers(self) -> List[int]:
        cfg = self.cfg
        if cfg.function_code == 3:
            read = self._client.read_holding_registers
        elif cfg.function_code == 4:
            read = self._client.read_input_registers
        else:
            raise RuntimeError(f"Function code {cfg.function_code} does not return registers")

        try:
            rr = read(address=cfg.register_address, count=cfg.register_count, device_id=cfg.unit_id)
        except ModbusException as exc:
            # e.g. ModbusIOException when the device accepts TCP but never answers
            raise RuntimeError(str(exc)) from exc
        if rr.isError():
            raise RuntimeError(f"Register read error at {cfg.register_address}: {rr}")
        return rr.registers

    def read_energy(self) -> Decimal:
        registers = self.read_registers()
        value = decode_registers(registers, self.cfg.data_type)
        log(
            f"Meter {self.cfg.ip_address} unit {self.cfg.unit_id}: "
            f"registers {' '.join(f'{w:04X}' for w in registers)} -> {value}"
        )
        try:
            return parse_reading(value)
        except ValueError as exc:
            raise RuntimeError(f"Meter returned an unusable reading: {value}") from exc


def read_initial_reading(cfg: ModbusTcpConfig, timeout: float = config.DEFAULT_TIMEOUT) -> Decimal:
    with ModbusMeterProbe(cfg, timeout=timeout) as probe:
        return probe.read_energy()
