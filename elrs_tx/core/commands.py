"""MSP function identifiers and ELRS device ids used across the project."""

from enum import IntEnum


class MSPCommand(IntEnum):
    MSP_ELRS_DEVICE_DISCOVERY = 0x28
    # Outbound (``<``) this is the ELRS parameter push; inbound (``>``) it
    # carries link statistics.
    MSP_ELRS_LINK_STATS = 0x2D
    MSP_ELRS_BATTERY = 0x2E
    MSP_ELRS_POWER_CONTROL = 0xF5
    MSP_ELRS_MODEL_SELECT = 0xF6


class ElrsDevice(IntEnum):
    RADIO_TRANSMITTER = 0xEA
    TX_MODULE = 0xEE
    HANDSET = 0xEF


class ElrsField(IntEnum):
    BIND = 0x00


class ElrsStatus(IntEnum):
    REQUEST = 0x00
    EXECUTE = 0x01
