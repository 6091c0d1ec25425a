from blobsaver.tsschecker_commands import BetaArg, GeneratorArg, render_args, VersionArg


def test_generator_is_fixed():
    assert GeneratorArg().render() == ["--generator", "0x1111111111111111"]


def test_beta_repeats_version_before_beta_flag():
    args = BetaArg("17.0", "21A5248v", "/tmp/BuildManifest.plist").render()
    assert args == ["-i", "17.0", "--beta", "--buildid", "21A5248v", "-m", "/tmp/BuildManifest.plist"]


def test_render_args_keeps_order():
    assert render_args([VersionArg("1"), VersionArg("2")]) == ["-i", "1", "-i", "2"]
