# tsschecker_commands.py
from typing import List

GENERATOR = "0x1111111111111111"


class TSSCheckerArg:
    def render(self) -> List[str]:
        raise NotImplementedError()

class ToolArg(TSSCheckerArg):
    def __init__(self, tool_path): self.tool_path = tool_path
    def render(self): return [str(self.tool_path)]

class GeneratorArg(TSSCheckerArg):
    def __init__(self, generator=GENERATOR): self.generator = generator
    def render(self): return ["--generator", self.generator]

class NoCacheArg(TSSCheckerArg):
    def render(self): return ["--nocache"]

class DeviceArg(TSSCheckerArg):
    def __init__(self, identifier): self.identifier = identifier
    def render(self): return ["-d", self.identifier]

class SaveFlagArg(TSSCheckerArg):
    def render(self): return ["-s"]

class EcidArg(TSSCheckerArg):
    def __init__(self, ecid): self.ecid = ecid
    def render(self): return ["-e", self.ecid]

class SavePathArg(TSSCheckerArg):
    def __init__(self, save_path): self.save_path = save_path
    def render(self): return ["--save-path", str(self.save_path)]

class VersionArg(TSSCheckerArg):
    def __init__(self, version): self.version = version
    def render(self): return ["-i", self.version]

class BoardConfigArg(TSSCheckerArg):
    def __init__(self, board_config): self.board_config = board_config
    def render(self): return ["--boardconfig", self.board_config]

class ApnonceArg(TSSCheckerArg):
    def __init__(self, apnonce): self.apnonce = apnonce
    def render(self): return ["--apnonce", self.apnonce]

class BetaArg(TSSCheckerArg):
    """Beta/custom build: the version is repeated, followed by the build id and manifest."""
    def __init__(self, version, build_id, manifest_path):
        self.version = version
        self.build_id = build_id
        self.manifest_path = manifest_path
    def render(self):
        return ["-i", self.version, "--beta", "--buildid", self.build_id, "-m", str(self.manifest_path)]


def render_args(args: List[TSSCheckerArg]) -> List[str]:
    rendered: List[str] = []
    for arg in args:
        rendered.extend(arg.render())
    return rendered
