from wrowlog.fitcsv.encoder import data_row, definition_row, header_row


def test_header_row():
    assert header_row(2) == "Type,Local Number,Message,Field 1,Value 1,Units 1,Field 2,Value 2,Units 2"


def test_file_id_definition():
    row = definition_row(0, "file_id", ["serial_number", "time_created", "manufacturer", "type"])
    assert row == "Definition,0,file_id,serial_number,1,,time_created,1,,manufacturer,1,,type,1,"


def test_record_definition_has_trailing_blank_column():
    row = definition_row(1, "record",
                         ["timestamp", "distance", "power", "cadence", "speed", "total_cycles", "heart_rate"],
                         trailing_blank=True)
    assert row == ("Definition,1,record,timestamp,1,,distance,1,,power,1,,cadence,1,,speed,1,,"
                   "total_cycles,1,,heart_rate,1,,")


def test_file_id_data():
    row = data_row(0, "file_id", [
        ("serial_number", 1102947382, ""),
        ("time_created", 1102947382, ""),
        ("manufacturer", 118, ""),
        ("type", 4, ""),
    ])
    assert row == ('Data,0,file_id,serial_number,"1102947382",,time_created,"1102947382",,'
                   'manufacturer,"118",,type,"4",')


def test_record_data_formats_values():
    row = data_row(1, "record", [
        ("timestamp", 1102947383, "s"),
        ("distance", 50, "m"),
        ("speed", 2.5, "m/s"),
        ("cadence", 120.0, "spm"),
    ])
    assert row == 'Data,1,record,timestamp,"1102947383",s,distance,"50",m,speed,"2.5",m/s,cadence,"120",spm,'


def test_session_data_ends_with_single_comma_after_blank_units():
    row = data_row(2, "session", [("timestamp", 1102947382, "s"), ("sport", 15, ""), ("sub_sport", 14, "")])
    assert row == 'Data,2,session,timestamp,"1102947382",s,sport,"15",,sub_sport,"14",'


def test_activity_data():
    row = data_row(3, "activity", [("timestamp", 1102947382, ""), ("num_sessions", 1, "")])
    assert row == 'Data,3,activity,timestamp,"1102947382",,num_sessions,"1",'
