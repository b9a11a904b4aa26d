"""
Interactive mode: raw device mnemonics over a line-based text stream.
"""

from __future__ import annotations

import sys
from typing import TextIO

from loguru import logger

from .commands import StageController

HELP_TEXT = """
DESCRIPTION:
    Commands are sent to the controller as typed (case-insensitive) and the
    reply is echoed as COMMAND --> RESPONSE. Commands have two forms:
    'COMMAND' to run or read something and 'VAR=###' to set a value.

    Driver parameters (DRVIC, DRVRC, DRVIT, DRVMS) are only applied after RW
    (check with R4) and only readable after RR (check with R2); 1 means the
    operation succeeded, anything else means it failed. Driver writes turn
    the motor off, send EO=1 afterwards.

    J+ and J- move until STOP is sent. Watch the stage while it moves.

COMMANDS:
    EXIT        Leave interactive mode
    HELP        Show this message
    STOP        Stop motor movement

    X####       Move to / by #### pulses (ABS / INC mode)
    J+ / J-     Jog up / down until STOP
    ABS / INC   Absolute / incremental moves

    HSPD[=###]  Get / set high speed
    LSPD[=###]  Get / set low speed
    ACC[=###]   Get / set acceleration time
    DEC[=###]   Get / set deceleration time
    EO[=1|0]    Get / set motor enable
    PX[=###]    Get / set pulse position
    EX[=###]    Get / set encoder position
    MST         Motor status (0 = idle)

    DRVIC[=100-2800]   Idle current, mA (driver parameter)
    DRVRC[=100-3000]   Run current, mA (driver parameter)
    DRVIT[=1-100]      Idle time, cs (driver parameter)
    DRVMS[=2-500]      Microsteps (driver parameter)

RETURN VALUES:
    ?[command]  Command was not understood
    ?Moving     A move or position change was sent while moving
"""


def interactive_mode(
    controller: StageController,
    input_stream: TextIO = sys.stdin,
    output_stream: TextIO = sys.stdout,
) -> int:
    """
    Relay typed commands to the device until EXIT or end of input.

    Rejected commands are echoed with their '?' response; transport
    errors propagate.

    Returns:
        Number of commands sent
    """
    print("Entering interactive mode", file=output_stream)
    sent = 0
    for raw_line in input_stream:
        command = raw_line.strip().upper()
        if not command:
            continue
        if command == "EXIT":
            break
        if command == "HELP":
            print(HELP_TEXT, file=output_stream)
            continue

        try:
            response = controller.query(command)
        except ValueError as e:
            logger.warning(f"Not sent: {e}")
            print(f"{command} --> not sent ({e})", file=output_stream)
            continue
        sent += 1
        print(f"{command} --> {response}", file=output_stream)
        output_stream.flush()

    print("Exiting interactive mode", file=output_stream)
    return sent
