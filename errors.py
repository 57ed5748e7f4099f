class RendezvousError(Exception):
    """A create/join request the relay refused. ``message`` is sent back in the ack."""

    message = "Request rejected"

    def __init__(self, message: str = None):
        if message:
            self.message = message
        super().__init__(self.message)


class RoomExists(RendezvousError):
    message = "Room already exists"


class RoomNotFound(RendezvousError):
    message = "Room does not exist"


class BadPassword(RendezvousError):
    message = "Incorrect password"


class RoomFull(RendezvousError):
    message = "Room is full"


REJECTIONS_BY_MESSAGE = {cls.message: cls for cls in (RoomExists, RoomNotFound, BadPassword, RoomFull)}


class NegotiationError(Exception):
    pass


class CandidateRejected(NegotiationError):
    pass


class NegotiationFailed(NegotiationError):
    pass


class TransferError(Exception):
    pass


class ChannelNotReady(TransferError):
    pass


class TransferInProgress(ChannelNotReady):
    pass


class TransferAborted(TransferError):
    pass


class ParseError(TransferError):
    pass


class ProtocolViolation(TransferError):
    pass
