import io
from enum import IntEnum
from io import BytesIO
import sys
import os
import re
from PIL import Image
import logging
from multiprocessing import Pool, cpu_count
import numpy as np

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

MAGIC_ILFF = int.from_bytes(b'ILFF', "little")
RES_TYPE_IRES = int.from_bytes(b'IRES', "little")

BODY_SUBHEADER_SIZE = 32


class ChunkType(IntEnum):
    NAME = 0x454D414E
    BODY = 0x59444F42


class IlffError(Exception):
    pass


class InvalidFormat(IlffError):
    pass


class TruncatedData(IlffError):
    pass


class InvalidChunk(IlffError):
    pass


class DecodeCancelled(IlffError):
    pass


def TagName(Value: int) -> str:
    """Render a u32 tag as its four ASCII characters, e.g. 0x46464C49 -> 'ILFF'."""
    Raw = (Value & 0xFFFFFFFF).to_bytes(4, "little")
    return "".join(chr(B) if 32 <= B < 127 else '.' for B in Raw)


class BinaryReader(BytesIO):
    def __init__(self, InitialBytes: bytes) -> None:
        super().__init__(InitialBytes)
        self.Size = len(InitialBytes)

    def Skip(self, Size: int):
        self.seek(Size, io.SEEK_CUR)

    def Remaining(self):
        return max(0, self.Size - self.tell())

    def ReadExact(self, Size: int) -> bytes:
        Data = self.read(Size)
        if len(Data) != Size:
            raise TruncatedData(f"Expected {Size} bytes at offset {self.tell() - len(Data)}, got {len(Data)}")
        return Data

    def ReadUshort(self):
        return int.from_bytes(self.ReadExact(2), "little", signed=False)

    def ReadUint(self):
        return int.from_bytes(self.ReadExact(4), "little", signed=False)

    def TryReadUint(self):
        if self.Remaining() < 4:
            return None
        return self.ReadUint()


def Trace(DebugLog: list, Message: str):
    DebugLog.append(Message)
    logging.debug(Message)


class ContainerHeader:
    def __init__(self, Magic: int = 0, FileSize: int = 0, Alignment: int = 0, Reserved: int = 0, ResType: int = 0) -> None:
        self.Magic = Magic
        self.FileSize = FileSize
        self.Alignment = Alignment
        self.Reserved = Reserved
        self.ResType = ResType


class ChunkHeader:
    def __init__(self, Type: int, BufferSize: int, Alignment: int, ChunkSize: int) -> None:
        self.Type = Type
        self.BufferSize = BufferSize
        self.Alignment = Alignment
        self.ChunkSize = ChunkSize

    def PaddingAfter(self, Offset: int) -> int:
        # Zero alignment means no padding.
        if self.Alignment == 0:
            return 0
        return (self.Alignment - (Offset % self.Alignment)) % self.Alignment


class ImageResource:
    """Decoded image; Data is always Width * Height * 4 bytes of RGBA8."""

    __slots__ = ("Name", "Width", "Height", "Data")

    def __init__(self, Name, Width: int, Height: int, Data: bytes) -> None:
        Data = bytes(Data)
        object.__setattr__(self, "Name", Name)
        object.__setattr__(self, "Width", Width)
        object.__setattr__(self, "Height", Height)
        object.__setattr__(self, "Data", Data)
        if len(Data) != self.ExpectedSize():
            raise ValueError(f"Pixel buffer is {len(Data)} bytes, expected {self.ExpectedSize()} for {Width}x{Height}")

    def __setattr__(self, Key, Value):
        raise AttributeError("ImageResource is immutable")

    def __repr__(self):
        return f"ImageResource(Name={self.Name!r}, Width={self.Width}, Height={self.Height}, Size={len(self.Data)})"

    def __eq__(self, Other):
        if not isinstance(Other, ImageResource):
            return NotImplemented
        return (self.Name, self.Width, self.Height, self.Data) == (Other.Name, Other.Width, Other.Height, Other.Data)

    def __hash__(self):
        return hash((self.Name, self.Width, self.Height, self.Data))

    def DisplayName(self, Index: int) -> str:
        if self.Name is not None:
            return self.Name
        return f"Image {Index}"

    def ExpectedSize(self):
        return self.Width * self.Height * 4

    def ToImage(self):
        return Image.frombytes('RGBA', (self.Width, self.Height), self.Data)

    def AsArray(self):
        return np.frombuffer(self.Data, dtype=np.uint8).reshape((self.Height, self.Width, 4))


class IlffDecoder:
    def __init__(self, Data: bytes, DebugLog: list = None, ShouldCancel=None) -> None:
        self.Reader = BinaryReader(Data)
        self.DebugLog = DebugLog if DebugLog is not None else []
        self.ShouldCancel = ShouldCancel
        self.CurrentName = None
        self.Images = []

    def Trace(self, Message: str):
        Trace(self.DebugLog, Message)

    def Decode(self):
        self.ReadHeader()
        self.ReadChunks()
        return self.Images

    def ReadHeader(self):
        Header = ContainerHeader()
        Header.Magic = self.Reader.ReadUint()
        self.Trace(f"Read magic number: 0x{Header.Magic:08X}")
        if Header.Magic != MAGIC_ILFF:
            self.Trace("Invalid magic number!")
            raise InvalidFormat("Invalid magic number")

        Header.FileSize = self.Reader.ReadUint()
        Header.Alignment = self.Reader.ReadUint()
        Header.Reserved = self.Reader.ReadUint()
        Header.ResType = self.Reader.ReadUint()
        self.Trace(f"Resource type: 0x{Header.ResType:08X}")
        if Header.ResType != RES_TYPE_IRES:
            self.Trace("Invalid resource type!")
            raise InvalidFormat("Invalid resource type")
        return Header

    def ReadChunkHeader(self):
        Type = self.Reader.TryReadUint()
        if Type is None:
            return None
        BufferSize = self.Reader.ReadUint()
        Alignment = self.Reader.ReadUint()
        ChunkSize = self.Reader.ReadUint()
        return ChunkHeader(Type, BufferSize, Alignment, ChunkSize)

    def ReadChunks(self):
        while True:
            if self.ShouldCancel is not None and self.ShouldCancel():
                self.Trace("Decoding cancelled.")
                raise DecodeCancelled("Decoding cancelled")

            Chunk = self.ReadChunkHeader()
            if Chunk is None:
                break
            self.Trace(f"Reading chunk type: 0x{Chunk.Type:08X} with buffer size: {Chunk.BufferSize}")

            ChunkStart = self.Reader.tell()

            if Chunk.Type == ChunkType.NAME:
                self.ReadNameChunk(Chunk)
            elif Chunk.Type == ChunkType.BODY:
                self.ReadBodyChunk(Chunk)
            else:
                self.Trace(f"Skipping unknown chunk type: 0x{Chunk.Type:08X} ({TagName(Chunk.Type)})")
                self.Reader.seek(ChunkStart + Chunk.BufferSize)

            self.Reader.Skip(Chunk.PaddingAfter(self.Reader.tell()))

    def ReadNameChunk(self, Chunk: ChunkHeader):
        NameBytes = self.Reader.ReadExact(Chunk.BufferSize)
        Name = NameBytes.decode('utf8', errors='replace').rstrip('\x00')
        self.Trace(f"Found NAME chunk: {Name}")
        self.CurrentName = Name

    def ReadBodyChunk(self, Chunk: ChunkHeader):
        self.Trace("Found BODY chunk.")
        if Chunk.BufferSize < BODY_SUBHEADER_SIZE:
            self.Trace("Invalid buffer size for BODY chunk.")
            raise InvalidChunk(f"Invalid buffer size {Chunk.BufferSize} for BODY chunk")

        # BodyType and four unknown u32, then six u16 of which the
        # first width/height pair is authoritative.
        self.Reader.Skip(20)
        self.Reader.ReadUshort()
        Width = self.Reader.ReadUshort()
        Height = self.Reader.ReadUshort()
        self.Reader.ReadUshort()
        self.Reader.ReadUshort()
        self.Reader.ReadUshort()

        ImageData = self.Reader.ReadExact(Chunk.BufferSize - BODY_SUBHEADER_SIZE)

        ExpectedSize = Width * Height * 4
        # Padding still applies after a skipped image.
        if len(ImageData) < ExpectedSize:
            self.Trace(f"Skipping image: pixel data is {len(ImageData)} bytes, expected {ExpectedSize}.")
            return
        elif len(ImageData) > ExpectedSize:
            self.Trace(f"Truncating image data from {len(ImageData)} to {ExpectedSize} bytes.")
            ImageData = ImageData[:ExpectedSize]

        Resource = ImageResource(self.CurrentName, Width, Height, ImageData)
        self.Trace(f"Loaded image: {Resource.Name!r} | Resolution: {Resource.Width}x{Resource.Height} | Size: {len(Resource.Data)} bytes")
        self.Images.append(Resource)


def ReadIlffFile(Source, DebugLog: list = None, ShouldCancel=None):
    """Source may be a path, a bytes-like buffer or a readable binary stream."""
    if DebugLog is None:
        DebugLog = []

    if isinstance(Source, (str, os.PathLike)):
        Trace(DebugLog, f"Opening file: {os.fspath(Source)}")
        with open(Source, "rb") as F:
            Data = F.read()
    elif isinstance(Source, (bytes, bytearray, memoryview)):
        Data = bytes(Source)
    else:
        Data = Source.read()

    return IlffDecoder(Data, DebugLog, ShouldCancel).Decode()


def LoadIlffFile(Filepath, DebugLog: list):
    try:
        Images = ReadIlffFile(Filepath, DebugLog)
    except (IlffError, OSError) as E:
        Trace(DebugLog, f"Failed to read file: {E}")
        raise
    Trace(DebugLog, "File successfully loaded.")
    return Images


def LogInfo(Filepath, Images):
    logging.info(f"{Filepath}: {len(Images)} image(s)")
    for Index, Resource in enumerate(Images):
        logging.info(f"   [{Index}] {Resource.DisplayName(Index)}")
        logging.info(f"       Resolution: {Resource.Width}x{Resource.Height} | Size: {len(Resource.Data)} bytes")


def GenerateOutputFilename(InputPath, Index: int, Resource: ImageResource):
    BaseName = os.path.splitext(os.path.basename(InputPath))[0]
    SafeName = re.sub(r'[^A-Za-z0-9._-]+', '_', Resource.DisplayName(Index)).strip('_') or f"Image_{Index}"
    return f"{BaseName}_{Index:03d}_{SafeName}.png"


def ExportImages(InputFile, Images, OutputDir=None):
    if OutputDir:
        os.makedirs(OutputDir, exist_ok=True)
    Outputs = []
    for Index, Resource in enumerate(Images):
        if Resource.Width == 0 or Resource.Height == 0:
            logging.warning(f"[{InputFile}] Skipping empty image {Resource.DisplayName(Index)}")
            continue
        OutputFile = GenerateOutputFilename(InputFile, Index, Resource)
        if OutputDir:
            OutputFile = os.path.join(OutputDir, OutputFile)
        Resource.ToImage().save(OutputFile)
        Outputs.append(OutputFile)
    return Outputs


def ProcessSingleFile(Args):
    InputFile, OutputDir = Args
    try:
        Images = ReadIlffFile(InputFile)
        if not Images:
            return False, InputFile, "No images found"
        Outputs = ExportImages(InputFile, Images, OutputDir)
        return True, InputFile, f"{len(Outputs)} image(s)"
    except Exception as E:
        return False, InputFile, str(E)


def ProcessBatchFiles(InputFiles, OutputDir=None):
    NumCores = cpu_count()
    logging.info(f"Using {NumCores} CPU cores for parallel processing")

    Tasks = [(InputFile, OutputDir) for InputFile in InputFiles]

    SuccessCount = 0
    FailCount = 0

    with Pool(processes=NumCores) as Pool_:
        Results = Pool_.map(ProcessSingleFile, Tasks)

        for Success, InputFile, Message in Results:
            if Success:
                print(f"✓ {InputFile} -> {Message}")
                SuccessCount += 1
            else:
                print(f"✗ {InputFile}: {Message}")
                FailCount += 1

    print(f"\nProcessing complete: {SuccessCount} succeeded, {FailCount} failed")
    return SuccessCount, FailCount


def Main(Argv=None):
    Argv = list(sys.argv[1:] if Argv is None else Argv)

    Debug = '--debug' in Argv
    ListOnly = '--list' in Argv
    Argv = [Arg for Arg in Argv if Arg not in ('--debug', '--list')]

    if Debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if not Argv:
        print("Single file: python IlffDecode.py <Input.res> [OutputDir] [--list] [--debug]")
        print("Batch mode:  python IlffDecode.py <Input1.res> <Input2.res> -o <OutputDir>")
        print("Directory:   python IlffDecode.py <InputDir> -o <OutputDir>")
        return 1

    if len(Argv) > 2 or (len(Argv) == 2 and Argv[1] == '-o') or os.path.isdir(Argv[0]):
        InputFiles = []
        OutputDir = None

        if '-o' in Argv:
            OIndex = Argv.index('-o')
            if OIndex + 1 >= len(Argv):
                logging.error("Missing output directory after -o")
                return 1
            OutputDir = Argv[OIndex + 1]

        if os.path.isdir(Argv[0]):
            InputDir = Argv[0]
            InputFiles = [os.path.join(InputDir, f) for f in sorted(os.listdir(InputDir))
                          if f.lower().endswith('.res')]
        else:
            for Arg in Argv:
                if Arg == '-o':
                    break
                if os.path.exists(Arg):
                    InputFiles.append(Arg)

        if not InputFiles:
            logging.error("No valid input files found")
            return 1

        SuccessCount, FailCount = ProcessBatchFiles(InputFiles, OutputDir)
        return 0 if FailCount == 0 else 1

    InputFile = Argv[0]
    OutputDir = Argv[1] if len(Argv) > 1 else None

    if not os.path.exists(InputFile):
        logging.error(f"File not found: {InputFile}")
        return 1

    DebugLog = []
    try:
        Images = LoadIlffFile(InputFile, DebugLog)
    except Exception as E:
        logging.error(f"Error processing file: {E}")
        return 1
    finally:
        if Debug:
            print("\nDebug Output:")
            for Line in DebugLog:
                print(f"   {Line}")

    LogInfo(InputFile, Images)

    if ListOnly:
        return 0

    if not Images:
        logging.error("No images found in file")
        return 1

    for OutputFile in ExportImages(InputFile, Images, OutputDir):
        print(f"Output: {OutputFile}")
    return 0


if __name__ == "__main__":
    sys.exit(Main())
