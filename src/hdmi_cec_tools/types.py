"""Type definitions for HDMI CEC Tools."""

from typing import Callable, Dict, Union

from .messages import CecFrame, CecOperand, LogicalAddress, PhysicalAddress

# Predicates
FramePredicate = Callable[[CecFrame], bool]
ParamsPredicate = Callable[[bytes], bool]

# Accepted spellings
AddressLike = Union[LogicalAddress, int]
OperandLike = Union[CecOperand, int]
PhysicalAddressLike = Union[PhysicalAddress, str, int]

# Adapter host configuration
HostConfig = Dict[str, str]  # {"hostname": str, "username": str, "password": str}
