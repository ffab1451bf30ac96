"""
Tests for XMLTV timestamp parsing, gzip detection and streaming element reading.
"""
import datetime
import gzip
import io
import os
import sys
import xml.etree.ElementTree as ET

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xmltv import (
    XmlTvChannel,
    XmlTvProgramme,
    is_gzip,
    iter_xmltv,
    open_decoded,
    open_feed,
    parse_xmltv_datetime,
    read_chunks,
)

UTC = datetime.timezone.utc


def _split(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)]


class TestXmltvDatetime:
    """Test yyyyMMddHHmmss[ +HHMM] parsing."""

    def test_offset_is_applied(self):
        dt = parse_xmltv_datetime("20240115143000 +0200")
        assert dt.astimezone(UTC) == datetime.datetime(2024, 1, 15, 12, 30, tzinfo=UTC)

    def test_negative_offset(self):
        dt = parse_xmltv_datetime("20240115143000 -0530")
        assert dt.astimezone(UTC) == datetime.datetime(2024, 1, 15, 20, 0, tzinfo=UTC)

    def test_result_is_aware_local_time(self):
        dt = parse_xmltv_datetime("20240115143000 +0000")
        assert dt.tzinfo is not None
        assert dt.utcoffset() == datetime.datetime(2024, 1, 15, 14, 30, tzinfo=UTC).astimezone().utcoffset()

    def test_missing_offset_is_local_wall_clock(self):
        dt = parse_xmltv_datetime("20240115143000")
        assert dt.tzinfo is not None
        assert dt.replace(tzinfo=None) == datetime.datetime(2024, 1, 15, 14, 30)

    @pytest.mark.parametrize("value", [
        None,
        "",
        "2024011514",
        "2024-01-15 14:30:00",
        "20241315143000 +0000",
        "20240115143000 +02",
        "20240115143000 GMT",
        "٢٠٢٤٠١١٥١٤٣٠٠٠",
    ])
    def test_rejects_malformed(self, value):
        assert parse_xmltv_datetime(value) is None

    def test_surrounding_whitespace_is_ignored(self):
        dt = parse_xmltv_datetime("  20240115143000 +0000  ")
        assert dt.astimezone(UTC) == datetime.datetime(2024, 1, 15, 14, 30, tzinfo=UTC)


class TestGzipHandling:
    """Test gzip detection and streamed decoding."""

    XML = b'<?xml version="1.0"?><tv><channel id="a"><display-name>A</display-name></channel></tv>'

    def test_detect_by_suffix_or_magic(self):
        assert is_gzip("http://x/guide.xml.GZ", b"<?")
        assert is_gzip("http://x/guide.php", b"\x1f\x8b\x08")
        assert not is_gzip("http://x/guide.xml", b"<?xml")

    def test_plain_bytes_pass_through(self):
        reader = open_decoded("guide.xml", io.BytesIO(self.XML))
        assert b"".join(read_chunks(reader, 7)) == self.XML

    def test_gzip_detected_by_magic(self):
        reader = open_decoded("http://x/epg.php?id=1", io.BytesIO(gzip.compress(self.XML)))
        assert b"".join(read_chunks(reader, 5)) == self.XML

    def test_concatenated_members(self):
        packed = gzip.compress(self.XML[:40]) + gzip.compress(self.XML[40:])
        assert open_decoded("guide.xml.gz", io.BytesIO(packed)).read() == self.XML

    def test_zero_padding_after_last_member(self):
        """Padding far past the first read is still accepted."""
        packed = gzip.compress(self.XML) + b"\x00" * 70000
        reader = open_decoded("http://x/guide", io.BytesIO(packed))
        assert b"".join(read_chunks(reader, 512)) == self.XML

    def test_empty_stream(self):
        assert list(read_chunks(open_decoded("guide.xml.gz", io.BytesIO(b"")))) == []

    def test_open_local_file(self, tmp_path):
        path = tmp_path / "guide.xml.gz"
        path.write_bytes(gzip.compress(self.XML))
        stream = open_feed(str(path))
        try:
            assert b"".join(read_chunks(open_decoded(str(path), stream), 10)) == self.XML
        finally:
            stream.close()

    def test_read_chunks_sizes(self):
        assert list(read_chunks(io.BytesIO(b"abcdefg"), 3)) == [b"abc", b"def", b"g"]


class TestIterXmltv:
    """Test streaming extraction of channel and programme records."""

    DOC = b'''<?xml version="1.0" encoding="UTF-8"?>
<tv generator-info-name="test">
  <channel id="bbc1.uk">
    <display-name lang="en">BBC One</display-name>
    <display-name>  </display-name>
    <display-name>BBC 1 HD</display-name>
  </channel>
  <channel><display-name>No id</display-name></channel>
  <programme start="20240115120000 +0000" stop="20240115130000 +0000" channel="bbc1.uk">
    <title lang="en"> News </title>
    <title>Later Title</title>
    <desc>Headlines.</desc>
    <category>News</category>
  </programme>
  <programme start="20240115130000 +0000" channel="bbc1.uk"><title>No stop</title></programme>
  <programme start="20240115130000 +0000" stop="20240115140000 +0000" channel="bbc1.uk"/>
</tv>
'''

    def test_records_in_document_order(self):
        records = list(iter_xmltv(_split(self.DOC, 50)))
        assert [type(r) for r in records] == [XmlTvChannel, XmlTvProgramme, XmlTvProgramme]

    def test_channel_display_names(self):
        channel = next(iter_xmltv([self.DOC]))
        assert channel.id == "bbc1.uk"
        assert channel.display_names == ["BBC One", "BBC 1 HD"]

    def test_programme_fields_last_value_wins(self):
        prog = list(iter_xmltv([self.DOC]))[1]
        assert prog.channel == "bbc1.uk"
        assert prog.start == "20240115120000 +0000"
        assert prog.title == "Later Title"
        assert prog.desc == "Headlines."
        assert prog.category == "News"

    def test_programme_without_children(self):
        prog = list(iter_xmltv([self.DOC]))[2]
        assert prog.title is None
        assert prog.desc is None

    def test_unicode_content(self):
        doc = ('<tv><channel id="cctv13.cn"><display-name>CCTV-13 新闻</display-name></channel></tv>').encode("utf-8")
        channel = next(iter_xmltv([doc]))
        assert channel.display_names == ["CCTV-13 新闻"]

    def test_truncated_document_yields_prefix_then_raises(self):
        doc = self.DOC[:self.DOC.index(b"<programme start=\"20240115130000 +0000\" channel")]
        seen = []
        with pytest.raises(ET.ParseError):
            for rec in iter_xmltv([doc]):
                seen.append(rec)
        assert len(seen) == 2

    def test_mismatched_tags_raise(self):
        with pytest.raises(ET.ParseError):
            list(iter_xmltv([b"<tv><programme></tv>"]))
