import pytest

from smithy.cli import ExtendedFilename, build_parser, parse_args


def test_parse_plain_name():
    parsed = ExtendedFilename.parse("r.3.7.mca")
    assert parsed == ExtendedFilename("r.3.7.mca", 3, 7)


def test_parse_negative_coordinates_with_directory():
    name = "world/region/r.-1.-12.mca"
    parsed = ExtendedFilename.parse(name)
    assert parsed.fname == name
    assert (parsed.x, parsed.z) == (-1, -12)


@pytest.mark.parametrize(
    "name",
    ["region.mca", "r.1.2.mcr", "r.1.mca", "r.a.2.mca", "r.1.2.mca.bak", "r.1.2.mca\n", ""],
)
def test_parse_rejects_other_names(name):
    with pytest.raises(ValueError, match="must end with"):
        ExtendedFilename.parse(name)


def test_parse_rejects_huge_coordinate():
    with pytest.raises(ValueError, match="x coordinate is not a number"):
        ExtendedFilename.parse("r.99999999999999999999.0.mca")


def test_mount_defaults():
    args = parse_args(["mount", "r.0.0.mca", "/mnt/region"])
    assert args.command == "mount"
    assert args.region_file == ExtendedFilename("r.0.0.mca", 0, 0)
    assert args.mount_point == "/mnt/region"
    assert args.writable is False
    assert args.auto_unmount is False


def test_mount_flags_short_and_long():
    short = parse_args(["mount", "-w", "-u", "r.2.-5.mca", "mp"])
    long = parse_args(["mount", "--writable", "--auto-unmount", "r.2.-5.mca", "mp"])
    for args in (short, long):
        assert args.writable is True
        assert args.auto_unmount is True
        assert (args.region_file.x, args.region_file.z) == (2, -5)


def test_mount_bad_region_name_exits():
    with pytest.raises(SystemExit) as info:
        parse_args(["mount", "level.dat", "mp"])
    assert info.value.code == 2


def test_completion_to_stdout():
    args = parse_args(["completion", "--shell", "zsh"])
    assert args.command == "completion"
    assert args.shell == "zsh"
    assert args.out_dir is None


def test_completion_with_out_dir():
    args = parse_args(["completion", "-s", "fish", "-o", "out"])
    assert args.shell == "fish"
    assert args.out_dir == "out"


def test_completion_unknown_shell_exits():
    with pytest.raises(SystemExit) as info:
        parse_args(["completion", "--shell", "tcsh"])
    assert info.value.code == 2


def test_completion_requires_shell():
    with pytest.raises(SystemExit) as info:
        parse_args(["completion"])
    assert info.value.code == 2


def test_subcommand_required():
    with pytest.raises(SystemExit) as info:
        parse_args([])
    assert info.value.code == 2


def test_build_parser_program_name():
    parser = build_parser()
    assert parser.prog == "smithy"
    assert parser.parse_args(["mount", "r.1.1.mca", "m"]).mount_point == "m"