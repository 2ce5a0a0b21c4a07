import io

from app.models.file import File
from app.models.file_recipient import FileRecipient
from app.services.uploads import IncomingFile


def first_recipient(file: File) -> FileRecipient:
    return sorted(file.recipients, key=lambda r: r.email)[0]


def incoming(content: bytes, filename: str = "report.pdf", content_type: str = "application/pdf"):
    return IncomingFile(
        filename=filename,
        content_type=content_type,
        stream=io.BytesIO(content),
        size=len(content),
    )
